import httpx
import pytest

from scheduled_messaging.core.exceptions import (
    ProviderRejectedError, ProviderTransientError, ProviderUnavailableError, ValidationError
)
from scheduled_messaging.models.database import MessageKind, ProviderRole
from scheduled_messaging.providers.base import (
    DeliveryOutcome, HttpDeliveryBackend, ProviderDeliveryState, map_provider_status
)


@pytest.mark.asyncio
async def test_primary_handles_send(make_gateway, primary_backend, backup_backend, domestic_recipients):
    gateway = make_gateway(primary_backend, backup_backend)

    result = await gateway.send_message(MessageKind.TEXT, domestic_recipients, "Hello", "Clinic")

    assert result.status == DeliveryOutcome.ACCEPTED
    assert result.provider == ProviderRole.PRIMARY
    assert result.provider_message_id == "primary-sms-1"
    assert result.accepted_count == 3
    assert result.rejected_count == 0
    assert backup_backend.calls == []


@pytest.mark.asyncio
async def test_primary_failure_falls_over_to_backup(make_gateway, failing_primary, backup_backend, domestic_recipients):
    """The caller sees an accepted backup result, not the primary failure."""
    gateway = make_gateway(failing_primary, backup_backend)

    result = await gateway.send_message(MessageKind.TEXT, domestic_recipients, "Hello", "Clinic")

    assert result.status == DeliveryOutcome.ACCEPTED
    assert result.provider == ProviderRole.BACKUP
    assert result.provider_name == "backup-sms"
    assert result.provider_message_id == "backup-sms-1"
    assert backup_backend.calls == [domestic_recipients]


@pytest.mark.asyncio
async def test_unexpected_primary_error_falls_over_to_backup(make_gateway, backend_factory, backup_backend, domestic_recipients):
    primary = backend_factory("primary-sms", error=RuntimeError("boom"))
    gateway = make_gateway(primary, backup_backend)

    result = await gateway.send_message(MessageKind.TEXT, domestic_recipients, "Hello", "Clinic")

    assert result.provider == ProviderRole.BACKUP
    assert backup_backend.calls == [domestic_recipients]
    assert gateway.candidates()[0] == ProviderRole.BACKUP


@pytest.mark.asyncio
async def test_malformed_primary_response_falls_over_to_backup(make_gateway, backup_backend, domestic_recipients):
    primary = HttpDeliveryBackend(
        "primary-sms", "https://sms.test/v1", "key", retry_wait=0,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[{"status": "success"}])),
    )
    gateway = make_gateway(primary, backup_backend)

    result = await gateway.send_message(MessageKind.TEXT, domestic_recipients, "Hello", "Clinic")

    assert result.status == DeliveryOutcome.ACCEPTED
    assert result.provider == ProviderRole.BACKUP
    assert len(backup_backend.calls) == 1
    await primary.close()


@pytest.mark.asyncio
async def test_unexpected_errors_on_every_variant_are_unavailable(make_gateway, backend_factory, domestic_recipients):
    primary = backend_factory("primary-sms", error=RuntimeError("boom"))
    backup = backend_factory("backup-sms", error=KeyError("message_id"))
    gateway = make_gateway(primary, backup)

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await gateway.send_message(MessageKind.TEXT, domestic_recipients, "Hello", "Clinic")

    assert "RuntimeError" in exc_info.value.attempts[0]
    assert "KeyError" in exc_info.value.attempts[1]


@pytest.mark.asyncio
async def test_known_down_primary_is_skipped(make_gateway, failing_primary, backup_backend, domestic_recipients):
    gateway = make_gateway(failing_primary, backup_backend)

    await gateway.send_message(MessageKind.TEXT, domestic_recipients, "first", "Clinic")
    await gateway.send_message(MessageKind.TEXT, domestic_recipients, "second", "Clinic")

    assert len(failing_primary.calls) == 1
    assert len(backup_backend.calls) == 2


@pytest.mark.asyncio
async def test_failed_health_check_short_circuits_to_backup(make_gateway, backend_factory, backup_backend, domestic_recipients):
    primary = backend_factory("primary-sms", healthy=False)
    gateway = make_gateway(primary, backup_backend)

    health = await gateway.health_check()
    result = await gateway.send_message(MessageKind.TEXT, domestic_recipients, "Hello", "Clinic")

    assert health == {"primary": "unhealthy", "backup": "healthy"}
    assert result.provider == ProviderRole.BACKUP
    assert primary.calls == []


@pytest.mark.asyncio
async def test_stale_health_is_checked_again(make_gateway, primary_backend):
    gateway = make_gateway(primary_backend, health_ttl=0)

    await gateway.health_check()
    await gateway.health_check()
    assert primary_backend.health_checks == 2

    cached = make_gateway(primary_backend, health_ttl=60)
    await cached.health_check()
    await cached.health_check()
    assert primary_backend.health_checks == 3

    await cached.health_check(force=True)
    assert primary_backend.health_checks == 4


@pytest.mark.asyncio
async def test_raising_health_check_counts_as_unhealthy(make_gateway, backend_factory, backup_backend, domestic_recipients):
    primary = backend_factory("primary-sms", health_error=RuntimeError("health endpoint exploded"))
    gateway = make_gateway(primary, backup_backend)

    health = await gateway.health_check()
    result = await gateway.send_message(MessageKind.TEXT, domestic_recipients, "Hello", "Clinic")

    assert health == {"primary": "unhealthy", "backup": "healthy"}
    assert result.provider == ProviderRole.BACKUP


@pytest.mark.asyncio
async def test_backup_reported_disabled(make_gateway, primary_backend):
    gateway = make_gateway(primary_backend)
    assert await gateway.health_check() == {"primary": "healthy", "backup": "disabled"}


@pytest.mark.asyncio
async def test_all_variants_exhausted(make_gateway, backend_factory, failing_primary, domestic_recipients):
    backup = backend_factory("backup-sms", error=ProviderRejectedError("Unauthorized", "backup-sms", status_code=401))
    gateway = make_gateway(failing_primary, backup)

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await gateway.send_message(MessageKind.TEXT, domestic_recipients, "Hello", "Clinic")

    assert len(exc_info.value.attempts) == 2
    assert "primary" in exc_info.value.attempts[0]


@pytest.mark.asyncio
async def test_primary_only_failure_is_unavailable(make_gateway, failing_primary, domestic_recipients):
    gateway = make_gateway(failing_primary)
    with pytest.raises(ProviderUnavailableError):
        await gateway.send_message(MessageKind.TEXT, domestic_recipients, "Hello", "Clinic")


@pytest.mark.asyncio
async def test_stalled_backend_times_out_and_fails_over(make_gateway, backend_factory, backup_backend, domestic_recipients):
    stalled = backend_factory("primary-sms", delay=5)
    gateway = make_gateway(stalled, backup_backend, timeout=0.05)

    result = await gateway.send_message(MessageKind.TEXT, domestic_recipients, "Hello", "Clinic")

    assert result.provider == ProviderRole.BACKUP


@pytest.mark.asyncio
async def test_malformed_recipients_are_rejected_without_retry(make_gateway, primary_backend):
    gateway = make_gateway(primary_backend)

    result = await gateway.send_message(
        MessageKind.TEXT, ["+2348030000001", "12ab", "+2348030000002"], "Hello", "Clinic"
    )

    assert result.status == DeliveryOutcome.PARTIAL
    assert result.accepted_count == 2
    assert result.rejected_count == 1
    assert result.rejected_recipients == ["12ab"]
    assert primary_backend.calls == [["+2348030000001", "+2348030000002"]]


@pytest.mark.asyncio
async def test_no_valid_recipients_never_reaches_a_backend(make_gateway, primary_backend):
    gateway = make_gateway(primary_backend)

    result = await gateway.send_message(MessageKind.TEXT, ["nope", "123"], "Hello", "Clinic")

    assert result.status == DeliveryOutcome.REJECTED
    assert result.rejected_count == 2
    assert result.provider is None
    assert primary_backend.calls == []


@pytest.mark.asyncio
async def test_provider_side_rejections_are_reported(make_gateway, backend_factory, domestic_recipients):
    primary = backend_factory("primary-sms", reject={"+2348030000002"})
    gateway = make_gateway(primary)

    result = await gateway.send_message(MessageKind.TEXT, domestic_recipients, "Hello", "Clinic")

    assert result.status == DeliveryOutcome.PARTIAL
    assert result.rejected_recipients == ["+2348030000002"]
    assert result.accepted_recipients == ["+2348030000001", "+2348030000003"]


@pytest.mark.asyncio
async def test_empty_input_is_a_validation_error(make_gateway, primary_backend, domestic_recipients):
    gateway = make_gateway(primary_backend)
    with pytest.raises(ValidationError):
        await gateway.send_message(MessageKind.TEXT, [], "Hello", "Clinic")
    with pytest.raises(ValidationError):
        await gateway.send_message(MessageKind.TEXT, domestic_recipients, "", "Clinic")


@pytest.mark.asyncio
async def test_default_sender_is_used(make_gateway, backend_factory, domestic_recipients):
    captured = {}

    class CapturingBackend(backend_factory):
        async def send(self, kind, recipients, content, sender_id):
            captured["sender"] = sender_id
            return await super().send(kind, recipients, content, sender_id)

    gateway = make_gateway(CapturingBackend("primary-sms"))
    await gateway.send_message(MessageKind.TEXT, domestic_recipients, "Hello")
    assert captured["sender"] == "Broadcast"


@pytest.mark.asyncio
async def test_message_status_from_accepting_variant(make_gateway, primary_backend, backup_backend):
    gateway = make_gateway(primary_backend, backup_backend)

    status = await gateway.get_message_status("backup-sms-1", ProviderRole.BACKUP)

    assert status.status == ProviderDeliveryState.DELIVERED
    assert status.provider == ProviderRole.BACKUP


@pytest.mark.asyncio
async def test_message_status_error_returns_unknown(make_gateway, failing_primary):
    gateway = make_gateway(failing_primary)

    status = await gateway.get_message_status("primary-sms-1")

    assert status.status == ProviderDeliveryState.UNKNOWN
    assert "500" in status.error

    unconfigured = await gateway.get_message_status("backup-sms-1", ProviderRole.BACKUP)
    assert unconfigured.status == ProviderDeliveryState.UNKNOWN


def test_estimate_cost_ignores_malformed_recipients(make_gateway, primary_backend):
    gateway = make_gateway(primary_backend)
    breakdown = gateway.estimate_cost(MessageKind.TEXT, ["+2348030000001", "bad"], "a" * 161)
    assert breakdown.recipient_count == 1
    assert str(breakdown.total_cost) == "8.00"


@pytest.mark.parametrize("raw,expected", [
    ("DELIVERED", ProviderDeliveryState.DELIVERED),
    ("completed", ProviderDeliveryState.DELIVERED),
    ("queued", ProviderDeliveryState.SENT),
    ("accepted", ProviderDeliveryState.SENT),
    ("expired", ProviderDeliveryState.FAILED),
    ("rejected", ProviderDeliveryState.FAILED),
    ("weird", ProviderDeliveryState.UNKNOWN),
    (None, ProviderDeliveryState.UNKNOWN),
])
def test_map_provider_status(raw, expected):
    assert map_provider_status(raw) == expected


def test_transient_error_is_a_provider_error():
    error = ProviderTransientError("Provider rate limit exceeded", "primary-sms", retry_after=2)
    assert error.provider == "primary-sms"
    assert error.retry_after == 2
