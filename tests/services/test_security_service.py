import asyncio
from unittest.mock import AsyncMock

import pytest

from app.services.security_service import SecurityService
from app.utils.error_handler import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from conftest import (
    CHROME_WINDOWS,
    FIREFOX_LINUX,
    FR_IP,
    SAFARI_IPHONE,
    US_IP,
    make_request,
)


async def _login(service, user_id, *, ip=US_IP, user_agent=CHROME_WINDOWS, **kwargs):
    request = make_request(ip=ip, user_agent=user_agent)
    session_id = await service.establish_session(user_id, request)
    record = await service.record_login_attempt(
        auth_method=kwargs.pop("auth_method", "password"),
        status="success",
        request=request,
        user_id=user_id,
        session_id=session_id,
        **kwargs,
    )
    await service.wait_for_notifications(timeout=5)
    return session_id, record


async def _fail(service, user_id, *, ip=US_IP):
    return await service.record_login_attempt(
        auth_method="password",
        status="failed",
        request=make_request(ip=ip),
        user_id=user_id,
        failure_reason="Invalid password",
    )


# === Recording ===


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        dict(auth_method="password", status="success", user_id=None),
        dict(auth_method="magic-link", status="success", user_id="user-a"),
        dict(auth_method="password", status="locked", user_id="user-a"),
    ],
)
async def test_record_login_attempt_validation(security_service, kwargs):
    with pytest.raises(ValidationError):
        await security_service.record_login_attempt(request=make_request(), **kwargs)


@pytest.mark.asyncio
async def test_record_login_attempt_requires_request(security_service):
    with pytest.raises(ValidationError):
        await security_service.record_login_attempt(
            auth_method="password", status="failed", request=None
        )


@pytest.mark.asyncio
async def test_failed_attempt_for_unknown_user_is_recorded(security_service, notifier):
    record = await security_service.record_login_attempt(
        auth_method="password",
        status="failed",
        request=make_request(),
        failure_reason="Unknown email",
    )

    assert record is not None
    assert record.user_id is None
    assert record.status == "failed"
    assert record.is_suspicious is False
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_record_captures_request_context(security_service):
    _, record = await _login(
        security_service, "user-a", two_factor_used=True, auth_method="2fa"
    )

    assert record.ip_address == US_IP
    assert (record.device_type, record.browser, record.os) == (
        "desktop",
        "Chrome",
        "Windows",
    )
    assert (record.country, record.city) == ("US", "Mountain View")
    assert record.user_agent_raw == CHROME_WINDOWS
    assert record.two_factor_used is True
    assert record.session_id is not None


@pytest.mark.asyncio
async def test_persistence_failure_returns_none(security_service, database, notifier):
    with database.engine.begin() as conn:
        conn.exec_driver_sql("DROP TABLE login_activity")

    record = await security_service.record_login_attempt(
        auth_method="password",
        status="success",
        request=make_request(),
        user_id="user-a",
    )

    assert record is None
    assert security_service.pending_notifications == 0
    assert notifier.sent == []


# === Scenarios ===


@pytest.mark.asyncio
async def test_scenario_new_devices_and_countries(security_service, notifier):
    # First login ever from device X in the US
    _, first = await _login(security_service, "user-a")
    assert first.is_suspicious is False
    assert first.suspicious_reasons == []
    assert len(notifier.sent) == 1
    user, device_info = notifier.sent[0]
    assert user.email == "a@example.com"
    assert device_info.ip_address == "8.xxx.xxx.xxx"
    assert device_info.browser == "Chrome"

    # Same device and country again
    _, second = await _login(security_service, "user-a")
    assert second.is_suspicious is False
    assert len(notifier.sent) == 1

    # Device Y from a country never seen before
    _, third = await _login(
        security_service, "user-a", ip=FR_IP, user_agent=SAFARI_IPHONE
    )
    assert third.is_suspicious is True
    assert "New country" in third.suspicious_reasons
    assert "New device type" in third.suspicious_reasons
    assert len(notifier.sent) == 2
    assert notifier.sent[1][1].country == "FR"


@pytest.mark.asyncio
async def test_scenario_failed_attempts_before_success(security_service):
    await _login(security_service, "user-b")
    for _ in range(3):
        await _fail(security_service, "user-b")

    _, record = await _login(security_service, "user-b")

    assert record.is_suspicious is True
    assert "Recent failed attempts" in record.suspicious_reasons


@pytest.mark.asyncio
async def test_first_success_after_failures_is_not_suspicious(security_service):
    for _ in range(3):
        await _fail(security_service, "user-b")

    _, record = await _login(security_service, "user-b")

    assert record.is_suspicious is False
    assert record.suspicious_reasons == []


# === New-device determination ===


@pytest.mark.asyncio
async def test_is_new_device(security_service, extractor):
    info = extractor.extract(make_request())
    assert await security_service.is_new_device("user-a", info) is True

    _, record = await _login(security_service, "user-a")

    assert await security_service.is_new_device("user-a", info) is False
    assert (
        await security_service.is_new_device("user-a", info, exclude_id=record.id)
        is True
    )

    other_browser = extractor.extract(make_request(user_agent=FIREFOX_LINUX))
    assert await security_service.is_new_device("user-a", other_browser) is True

    new_country = extractor.extract(make_request(ip=FR_IP))
    assert await security_service.is_new_device("user-a", new_country) is True


@pytest.mark.asyncio
async def test_is_new_device_fails_soft(security_service, extractor):
    info = extractor.extract(make_request())
    security_service.activity = AsyncMock()
    security_service.activity.exists_success.side_effect = TransientStoreError()

    assert await security_service.is_new_device("user-a", info) is False


# === Notifications ===


@pytest.mark.asyncio
async def test_notification_failure_does_not_affect_login(security_service, notifier):
    notifier.fail = True

    _, record = await _login(security_service, "user-a")

    assert record is not None
    assert security_service.pending_notifications == 0


@pytest.mark.asyncio
async def test_notification_skipped_for_unknown_user(security_service, notifier):
    _, record = await _login(security_service, "user-without-profile")

    assert record is not None
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_notification_is_dispatched_without_blocking(
    security_service, notifier
):
    release = asyncio.Event()
    original = notifier.send_new_device_login_email

    async def slow_send(user, device_info):
        await release.wait()
        await original(user, device_info)

    notifier.send_new_device_login_email = slow_send
    request = make_request()

    record = await security_service.record_login_attempt(
        auth_method="password", status="success", request=request, user_id="user-a"
    )

    assert record is not None
    assert security_service.pending_notifications == 1
    assert notifier.sent == []

    release.set()
    await security_service.wait_for_notifications(timeout=5)
    assert security_service.pending_notifications == 0
    assert len(notifier.sent) == 1


# === Queries ===


@pytest.mark.asyncio
async def test_get_login_activity_masks_ips_and_orders(security_service):
    await _login(security_service, "user-a")
    await _fail(security_service, "user-a", ip=FR_IP)

    activity = await security_service.get_login_activity("user-a")

    assert [a.status for a in activity] == ["failed", "success"]
    assert [a.ip_address for a in activity] == ["81.xxx.xxx.xxx", "8.xxx.xxx.xxx"]


@pytest.mark.asyncio
async def test_login_activity_and_devices_mask_ipv6(security_service, notifier):
    session_id, _ = await _login(security_service, "user-a", ip="2001:db8::1")

    (activity,) = await security_service.get_login_activity("user-a")
    (device,) = await security_service.get_active_devices("user-a", session_id)

    assert activity.ip_address == "2001:0db8:0000:0000:xxxx:xxxx:xxxx:xxxx"
    assert device.ip_address == activity.ip_address
    assert all("db8::1" not in str(n) for n in notifier.sent)


@pytest.mark.asyncio
async def test_get_login_activity_limit(security_service):
    for _ in range(3):
        await _fail(security_service, "user-a")

    assert len(await security_service.get_login_activity("user-a", limit=2)) == 2
    assert len(await security_service.get_login_activity("user-a", limit=100)) == 3
    for bad in (0, 101, -5):
        with pytest.raises(ValidationError):
            await security_service.get_login_activity("user-a", limit=bad)


@pytest.mark.asyncio
async def test_get_login_activity_store_failure(security_service, database):
    with database.engine.begin() as conn:
        conn.exec_driver_sql("DROP TABLE login_activity")

    with pytest.raises(TransientStoreError):
        await security_service.get_login_activity("user-a")


@pytest.mark.asyncio
async def test_get_active_devices(security_service, fake_redis):
    laptop, _ = await _login(security_service, "user-a")
    phone, _ = await _login(
        security_service, "user-a", ip=FR_IP, user_agent=SAFARI_IPHONE
    )
    await security_service.sessions.validate_session("user-a", laptop)

    devices = await security_service.get_active_devices("user-a", phone)

    assert [d.session_id for d in devices] == [laptop, phone]
    assert [d.is_current for d in devices] == [False, True]
    assert devices[0].ip_address == "8.xxx.xxx.xxx"
    assert devices[1].device_type == "mobile"
    assert devices[1].country == "FR"


@pytest.mark.asyncio
async def test_get_active_devices_falls_back_to_activity(
    security_service, fake_redis
):
    request = make_request()
    session_id = await security_service.sessions.create_session("user-a")
    await security_service.record_login_attempt(
        auth_method="password",
        status="success",
        request=request,
        user_id="user-a",
        session_id=session_id,
    )
    await security_service.wait_for_notifications(timeout=5)

    (device,) = await security_service.get_active_devices("user-a")

    assert device.browser == "Chrome"
    assert device.country == "US"
    assert device.ip_address == "8.xxx.xxx.xxx"
    assert device.is_current is False


@pytest.mark.asyncio
async def test_get_active_devices_empty_when_store_down(security_service, fake_redis):
    await _login(security_service, "user-a")
    fake_redis.fail_all = True

    assert await security_service.get_active_devices("user-a") == []


# === Device management ===


@pytest.mark.asyncio
async def test_logout_device(security_service):
    keep, _ = await _login(security_service, "user-a")
    drop, _ = await _login(security_service, "user-a", user_agent=FIREFOX_LINUX)

    await security_service.logout_device("user-a", drop)
    await security_service.logout_device("user-a", drop)

    ids = [d.session_id for d in await security_service.get_active_devices("user-a")]
    assert ids == [keep]


@pytest.mark.asyncio
async def test_logout_device_of_other_user_is_forbidden(security_service):
    theirs, _ = await _login(security_service, "user-b")

    with pytest.raises(AuthorizationError):
        await security_service.logout_device("user-a", theirs)


@pytest.mark.asyncio
async def test_logout_all_devices(security_service):
    for agent in (CHROME_WINDOWS, FIREFOX_LINUX, SAFARI_IPHONE):
        await _login(security_service, "user-a", user_agent=agent)

    assert await security_service.logout_all_devices("user-a") == 3
    assert await security_service.get_active_devices("user-a") == []


@pytest.mark.asyncio
async def test_update_device_name(security_service):
    session_id, _ = await _login(security_service, "user-a")

    device = await security_service.update_device_name(
        "user-a", session_id, "  Office PC  "
    )

    assert device.device_name == "Office PC"
    assert device.ip_address == "8.xxx.xxx.xxx"
    (listed,) = await security_service.get_active_devices("user-a")
    assert listed.device_name == "Office PC"


@pytest.mark.asyncio
async def test_update_device_name_validation(security_service):
    session_id, _ = await _login(security_service, "user-a")

    with pytest.raises(ValidationError):
        await security_service.update_device_name("user-a", session_id, "   ")
    with pytest.raises(ValidationError):
        await security_service.update_device_name("user-a", session_id, "x" * 51)
    with pytest.raises(NotFoundError):
        await security_service.update_device_name("user-a", "missing", "Phone")


@pytest.mark.asyncio
async def test_refresh_session(security_service):
    session_id, _ = await _login(security_service, "user-a")

    await security_service.refresh_session("user-a", session_id)

    with pytest.raises(AuthenticationError):
        await security_service.refresh_session("user-b", session_id)


@pytest.mark.asyncio
async def test_establish_session_failure_is_fatal(security_service, fake_redis):
    fake_redis.fail_all = True

    with pytest.raises(TransientStoreError):
        await security_service.establish_session("user-a", make_request())


@pytest.mark.asyncio
async def test_concurrent_logins_from_two_devices(security_service):
    (laptop, _), (phone, _) = await asyncio.gather(
        _login(security_service, "user-a"),
        _login(security_service, "user-a", user_agent=SAFARI_IPHONE),
    )

    ids = {d.session_id for d in await security_service.get_active_devices("user-a")}
    assert ids == {laptop, phone}


@pytest.mark.asyncio
async def test_default_extractor_is_used_when_none_given(
    session_manager, activity_repository, user_directory, notifier
):
    service = SecurityService(
        session_manager,
        activity_repository,
        users=user_directory,
        notifier=notifier,
    )
    assert service.extractor is None

    record = await service.record_login_attempt(
        auth_method="password",
        status="failed",
        request=make_request(ip="10.0.0.1"),
        user_id="user-a",
    )

    assert record.country == "Local"
    assert record.city == "Local"
