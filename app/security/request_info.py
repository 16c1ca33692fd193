"""
Request context extraction: client IP, user agent and coarse location.

Normalizes an inbound request into the device/location metadata used by the
session store, the activity log and the suspicious activity detector.
Missing or malformed headers never raise; they degrade to "Unknown".
Geolocation is delegated to a ``GeoLocator`` collaborator.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Optional, Protocol

import geoip2.database
import geoip2.errors
from pydantic import BaseModel
from starlette.requests import Request
from user_agents import parse as parse_ua_string

from app.core.config import settings
from app.security.schemas import SessionMetadata
from app.utils.error_handler import ValidationError
from app.utils.logger import get_logger

logger = get_logger(__name__)

UNKNOWN = "Unknown"
UNKNOWN_DEVICE = "unknown"
LOCAL = "Local"
IPV6_MASK_SUFFIX = ":xxxx:xxxx:xxxx:xxxx"

# ua-parser reports unrecognized families as "Other"
UA_OTHER = "Other"


@dataclass(frozen=True)
class UserAgentInfo:
    browser: str
    os: str
    device_type: str


@dataclass(frozen=True)
class GeoLocation:
    country: str
    city: str
    region: Optional[str] = None
    timezone: Optional[str] = None


class GeoLocator(Protocol):
    def lookup(self, ip: str) -> Optional[GeoLocation]: ...


class NullGeoLocator:
    """Resolves nothing; every public address maps to Unknown."""

    def lookup(self, ip: str) -> Optional[GeoLocation]:
        return None


class RequestInfo(BaseModel):
    ip_address: str
    ip_masked: str
    user_agent_raw: str
    browser: str
    os: str
    device_type: str
    country: str
    city: str
    region: Optional[str] = None
    timezone: Optional[str] = None

    def to_session_metadata(self) -> SessionMetadata:
        return SessionMetadata(
            device_type=self.device_type,
            browser=self.browser,
            os=self.os,
            ip_address=self.ip_address,
            country=self.country,
            city=self.city,
        )


def is_valid_ip(ip: Optional[str]) -> bool:
    if not ip or not isinstance(ip, str):
        return False
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        return False
    return True


def is_private_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return ip.lower() == "localhost"
    return addr.is_private or addr.is_loopback or addr.is_link_local


def _strip_v4_mapped(ip: str) -> str:
    return ip[len("::ffff:") :] if ip.lower().startswith("::ffff:") else ip


def mask_ip(ip: Optional[str]) -> str:
    """
    Mask an IP address for display and logging.

    IPv4 keeps the first octet (``192.xxx.xxx.xxx``); IPv6 is expanded and
    keeps the first four groups, so compressed forms never pass through.
    Masking an already masked value returns it unchanged.
    """
    if not ip or ip == UNKNOWN:
        return UNKNOWN

    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        addr = None

    if isinstance(addr, ipaddress.IPv6Address):
        if addr.ipv4_mapped is not None:
            addr = addr.ipv4_mapped
        else:
            groups = addr.exploded.split(":")
            return ":".join(groups[:4]) + IPV6_MASK_SUFFIX
    if isinstance(addr, ipaddress.IPv4Address):
        return f"{str(addr).split('.')[0]}.xxx.xxx.xxx"

    # Not an address: only previously masked values survive
    parts = ip.split(".")
    if len(parts) == 4 and parts[1:] == ["xxx", "xxx", "xxx"]:
        return ip
    if ip.endswith(IPV6_MASK_SUFFIX) and len(ip.split(":")) == 8:
        return ip
    return "xxx.xxx.xxx.xxx"


def _family(value: Optional[str]) -> str:
    return value if value and value != UA_OTHER else UNKNOWN


def parse_user_agent(user_agent: Optional[str]) -> UserAgentInfo:
    """
    Classify a User-Agent header into browser family, OS family and device type.

    Families come from the ua-parser database (``Chrome``, ``Mobile Safari``,
    ``Mac OS X``...). Anything that is neither a tablet nor a phone counts as
    desktop; an unparsable header yields Unknown/unknown.
    """
    if not user_agent or not isinstance(user_agent, str) or user_agent == UNKNOWN:
        return UserAgentInfo(browser=UNKNOWN, os=UNKNOWN, device_type=UNKNOWN_DEVICE)

    try:
        ua = parse_ua_string(user_agent)
    except Exception as e:  # noqa: BLE001
        logger.warning("user_agent_parse_failed", error=str(e))
        return UserAgentInfo(browser=UNKNOWN, os=UNKNOWN, device_type=UNKNOWN_DEVICE)

    if ua.is_tablet:
        device_type = "tablet"
    elif ua.is_mobile:
        device_type = "mobile"
    else:
        device_type = "desktop"

    return UserAgentInfo(
        browser=_family(ua.browser.family),
        os=_family(ua.os.family),
        device_type=device_type,
    )


class MaxMindGeoLocator:
    """
    City-level lookups against a local MaxMind GeoLite2/GeoIP2 database.

    Addresses missing from the database resolve to None. The reader is opened
    once and must be closed on shutdown.
    """

    def __init__(
        self,
        database_path: Optional[str] = None,
        *,
        reader: Optional[geoip2.database.Reader] = None,
    ) -> None:
        if reader is None:
            if not database_path:
                raise ValueError("database_path is required without a reader")
            reader = geoip2.database.Reader(database_path)
        self.reader = reader

    def lookup(self, ip: str) -> Optional[GeoLocation]:
        try:
            response = self.reader.city(ip)
        except geoip2.errors.AddressNotFoundError:
            return None
        return GeoLocation(
            country=response.country.iso_code or UNKNOWN,
            city=response.city.name or UNKNOWN,
            region=response.subdivisions.most_specific.name,
            timezone=response.location.time_zone,
        )

    def close(self) -> None:
        self.reader.close()


def build_geolocator(database_path: Optional[str] = None) -> GeoLocator:
    """MaxMind locator when a database is configured, otherwise NullGeoLocator."""
    path = database_path or settings.GEOIP_DATABASE_PATH
    if not path:
        logger.info("GeoIP database not configured; locations resolve to Unknown")
        return NullGeoLocator()
    logger.info("GeoIP database loaded", path=path)
    return MaxMindGeoLocator(path)


class RequestInfoExtractor:
    def __init__(
        self,
        geolocator: Optional[GeoLocator] = None,
        *,
        trust_proxy_headers: Optional[bool] = None,
    ) -> None:
        self.geolocator = geolocator or NullGeoLocator()
        self.trust_proxy_headers = (
            settings.TRUST_PROXY_HEADERS
            if trust_proxy_headers is None
            else trust_proxy_headers
        )

    def get_client_ip(self, request: Request) -> str:
        if self.trust_proxy_headers:
            forwarded_for = request.headers.get("x-forwarded-for")
            if forwarded_for:
                # "client, proxy1, proxy2" - the first hop is the client
                first = _strip_v4_mapped(forwarded_for.split(",")[0].strip())
                if is_valid_ip(first):
                    return first

            real_ip = request.headers.get("x-real-ip")
            if real_ip and is_valid_ip(real_ip.strip()):
                return _strip_v4_mapped(real_ip.strip())

        if request.client and request.client.host:
            host = _strip_v4_mapped(request.client.host)
            if is_valid_ip(host):
                return host

        return UNKNOWN

    def get_location(self, ip: str) -> GeoLocation:
        if not is_valid_ip(ip):
            return GeoLocation(country=UNKNOWN, city=UNKNOWN)
        if is_private_ip(ip):
            return GeoLocation(country=LOCAL, city=LOCAL)
        try:
            location = self.geolocator.lookup(ip)
        except Exception as e:  # noqa: BLE001
            logger.warning("geolocation_failed", ip=ip, error=str(e))
            return GeoLocation(country=UNKNOWN, city=UNKNOWN)
        if location is None:
            return GeoLocation(country=UNKNOWN, city=UNKNOWN)
        return GeoLocation(
            country=location.country or UNKNOWN,
            city=location.city or UNKNOWN,
            region=location.region,
            timezone=location.timezone,
        )

    def extract(self, request: Optional[Request]) -> RequestInfo:
        if request is None:
            raise ValidationError("Request object is required")

        ip = self.get_client_ip(request)
        user_agent = request.headers.get("user-agent") or UNKNOWN
        ua = parse_user_agent(user_agent)
        location = self.get_location(ip)

        return RequestInfo(
            ip_address=ip,
            ip_masked=mask_ip(ip),
            user_agent_raw=user_agent,
            browser=ua.browser,
            os=ua.os,
            device_type=ua.device_type,
            country=location.country,
            city=location.city,
            region=location.region,
            timezone=location.timezone,
        )


_default_extractor = RequestInfoExtractor()


def extract_request_info(request: Optional[Request]) -> RequestInfo:
    return _default_extractor.extract(request)
