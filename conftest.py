"""
Shared fixtures: an in-memory asyncio Redis double, a file-backed SQLite
activity log, stub collaborators and a request builder.
"""

import fnmatch
import os
import time
from typing import Any, Dict, List, Optional, Set

# Settings are read at import time
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from dotenv import load_dotenv
from redis.exceptions import ConnectionError as RedisConnectionError
from starlette.requests import Request

from app.db.session import Database
from app.security.audit.login_activity import LoginActivityRepository
from app.security.auth.session_manager import SessionManager
from app.security.request_info import GeoLocation, RequestInfoExtractor
from app.security.schemas import NewDeviceInfo, UserRecord
from app.services.security_service import SecurityService

# Load environment variables from .env file
load_dotenv()

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)
FIREFOX_LINUX = (
    "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
)

US_IP = "8.8.8.8"
FR_IP = "81.250.1.1"
DE_IP = "85.214.1.1"


class FakeRedis:
    """
    Single-process stand-in for ``redis.asyncio.Redis`` with
    ``decode_responses=True``.

    Supports the commands used by the session store and rate limiter,
    including pipelines and key expiry. ``fail_all`` or ``fail_commands``
    make commands raise ``redis.exceptions.ConnectionError``.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._expires_at: Dict[str, float] = {}
        self._offset = 0.0
        self.fail_all = False
        self.fail_commands: Set[str] = set()
        self.closed = False

    # --- test controls ---

    def advance(self, seconds: float) -> None:
        self._offset += seconds

    def raw_keys(self) -> List[str]:
        return [k for k in list(self._data) if self._alive(k)]

    def _now(self) -> float:
        return time.monotonic() + self._offset

    def _check(self, command: str) -> None:
        if self.fail_all or command in self.fail_commands:
            raise RedisConnectionError(f"fake redis unavailable ({command})")

    def _alive(self, key: str) -> bool:
        deadline = self._expires_at.get(key)
        if deadline is not None and deadline <= self._now():
            self._data.pop(key, None)
            self._expires_at.pop(key, None)
        return key in self._data

    def _run(self, command: str, *args: Any, **kwargs: Any) -> Any:
        self._check(command)
        return getattr(self, f"_cmd_{command}")(*args, **kwargs)

    # --- command implementations ---

    def _cmd_ping(self) -> bool:
        return True

    def _cmd_get(self, key: str) -> Optional[str]:
        return self._data.get(key) if self._alive(key) else None

    def _cmd_mget(self, keys: List[str]) -> List[Optional[str]]:
        return [self._cmd_get(k) for k in keys]

    def _cmd_set(
        self,
        key: str,
        value: str,
        ex: Optional[int] = None,
        nx: bool = False,
        xx: bool = False,
        keepttl: bool = False,
    ) -> Optional[bool]:
        exists = self._alive(key)
        if (nx and exists) or (xx and not exists):
            return None
        self._data[key] = str(value)
        if ex is not None:
            self._expires_at[key] = self._now() + ex
        elif not keepttl:
            self._expires_at.pop(key, None)
        return True

    def _cmd_delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                del self._data[key]
                self._expires_at.pop(key, None)
                removed += 1
        return removed

    def _cmd_exists(self, *keys: str) -> int:
        return sum(1 for k in keys if self._alive(k))

    def _cmd_sadd(self, key: str, *members: str) -> int:
        if not self._alive(key):
            self._data[key] = set()
        current = self._data[key]
        before = len(current)
        current.update(members)
        return len(current) - before

    def _cmd_srem(self, key: str, *members: str) -> int:
        if not self._alive(key):
            return 0
        current = self._data[key]
        removed = len(current & set(members))
        current.difference_update(members)
        if not current:
            self._cmd_delete(key)
        return removed

    def _cmd_smembers(self, key: str) -> Set[str]:
        return set(self._data[key]) if self._alive(key) else set()

    def _cmd_sismember(self, key: str, member: str) -> bool:
        return self._alive(key) and member in self._data[key]

    def _cmd_expire(self, key: str, seconds: int, nx: bool = False) -> bool:
        if not self._alive(key):
            return False
        if nx and key in self._expires_at:
            return False
        self._expires_at[key] = self._now() + seconds
        return True

    def _cmd_ttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        deadline = self._expires_at.get(key)
        if deadline is None:
            return -1
        return max(0, int(round(deadline - self._now())))

    def _cmd_incr(self, key: str) -> int:
        value = int(self._data[key]) + 1 if self._alive(key) else 1
        self._data[key] = str(value)
        return value

    # --- async client surface ---

    async def ping(self) -> bool:
        return self._run("ping")

    async def get(self, key: str) -> Optional[str]:
        return self._run("get", key)

    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        return self._run("mget", keys)

    async def set(self, key: str, value: str, **kwargs: Any) -> Optional[bool]:
        return self._run("set", key, value, **kwargs)

    async def delete(self, *keys: str) -> int:
        return self._run("delete", *keys)

    async def exists(self, *keys: str) -> int:
        return self._run("exists", *keys)

    async def sadd(self, key: str, *members: str) -> int:
        return self._run("sadd", key, *members)

    async def srem(self, key: str, *members: str) -> int:
        return self._run("srem", key, *members)

    async def smembers(self, key: str) -> Set[str]:
        return self._run("smembers", key)

    async def sismember(self, key: str, member: str) -> bool:
        return self._run("sismember", key, member)

    async def expire(self, key: str, seconds: int, **kwargs: Any) -> bool:
        return self._run("expire", key, seconds, **kwargs)

    async def ttl(self, key: str) -> int:
        return self._run("ttl", key)

    async def incr(self, key: str) -> int:
        return self._run("incr", key)

    async def scan_iter(self, match: Optional[str] = None):
        self._check("scan")
        for key in self.raw_keys():
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True


class FakePipeline:
    """Buffers commands and applies them back to back on ``execute``."""

    def __init__(self, client: FakeRedis) -> None:
        self._client = client
        self._commands: List[tuple] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self._commands = []

    def __getattr__(self, command: str):
        if not hasattr(self._client, f"_cmd_{command}"):
            raise AttributeError(command)

        def buffer(*args: Any, **kwargs: Any) -> "FakePipeline":
            self._commands.append((command, args, kwargs))
            return self

        return buffer

    async def execute(self) -> List[Any]:
        self._client._check("execute")
        for command, _, _ in self._commands:
            self._client._check(command)
        results = [
            getattr(self._client, f"_cmd_{command}")(*args, **kwargs)
            for command, args, kwargs in self._commands
        ]
        self._commands = []
        return results


class DictGeoLocator:
    def __init__(self, table: Optional[Dict[str, GeoLocation]] = None) -> None:
        self.table = table or {}

    def lookup(self, ip: str) -> Optional[GeoLocation]:
        return self.table.get(ip)


class InMemoryUserDirectory:
    def __init__(self) -> None:
        self.users: Dict[str, UserRecord] = {}

    def add(self, user_id: str, email: str, name: Optional[str] = None) -> UserRecord:
        user = UserRecord(id=user_id, email=email, name=name)
        self.users[user_id] = user
        return user

    async def find_user_by_id(self, user_id: str) -> Optional[UserRecord]:
        return self.users.get(str(user_id))


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[tuple] = []
        self.fail = False

    async def send_new_device_login_email(
        self, user: UserRecord, device_info: NewDeviceInfo
    ) -> None:
        if self.fail:
            raise RuntimeError("mailer unavailable")
        self.sent.append((user, device_info))


def make_request(
    ip: str = US_IP,
    user_agent: Optional[str] = CHROME_WINDOWS,
    headers: Optional[Dict[str, str]] = None,
) -> Request:
    """Build a bare starlette request as seen by the authentication flow."""
    raw_headers = []
    if user_agent is not None:
        raw_headers.append((b"user-agent", user_agent.encode()))
    for name, value in (headers or {}).items():
        raw_headers.append((name.lower().encode(), value.encode()))
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/v1/auth/login",
        "headers": raw_headers,
        "query_string": b"",
        "client": (ip, 54321),
        "server": ("testserver", 80),
        "scheme": "http",
    }
    return Request(scope)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def session_manager(fake_redis: FakeRedis) -> SessionManager:
    return SessionManager(fake_redis)


@pytest.fixture
def database(tmp_path):
    """A SQLite file per test; worker threads each get their own connection."""
    db = Database(f"sqlite:///{tmp_path / 'activity.db'}")
    db.connect()
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def activity_repository(database: Database) -> LoginActivityRepository:
    return LoginActivityRepository(database.session_factory)


@pytest.fixture
def geolocator() -> DictGeoLocator:
    return DictGeoLocator(
        {
            US_IP: GeoLocation(country="US", city="Mountain View"),
            FR_IP: GeoLocation(country="FR", city="Paris"),
            DE_IP: GeoLocation(country="DE", city="Berlin"),
        }
    )


@pytest.fixture
def extractor(geolocator: DictGeoLocator) -> RequestInfoExtractor:
    return RequestInfoExtractor(geolocator, trust_proxy_headers=True)


@pytest.fixture
def user_directory() -> InMemoryUserDirectory:
    directory = InMemoryUserDirectory()
    directory.add("user-a", "a@example.com", "Alice")
    directory.add("user-b", "b@example.com", "Bob")
    return directory


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def security_service(
    session_manager: SessionManager,
    activity_repository: LoginActivityRepository,
    user_directory: InMemoryUserDirectory,
    notifier: RecordingNotifier,
    extractor: RequestInfoExtractor,
) -> SecurityService:
    return SecurityService(
        session_manager,
        activity_repository,
        users=user_directory,
        notifier=notifier,
        extractor=extractor,
    )
