from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from signflow.core.errors import RequestExpired, SigningError, ValidationError
from signflow.models.signing import RequestStatus, SignerStatus, SigningPolicy
from signflow.services.expiration import ExpirationSweeper

from .conftest import INITIATOR, request_payload, typed_payload


def _event_types(services, request_id) -> list[str]:
    items, _ = services.audit_log.list_events(request_id=request_id, page_size=500)
    return [item.event_type for item in items]


def test_overdue_requests_are_expired_once(services, notifier) -> None:
    detail = services.lifecycle.create(request_payload(expires_in_days=1), INITIATOR)
    request_id = detail.request.id
    services.signers.record_sign(detail.signers[0].id, typed_payload())
    sweep_at = detail.request.expires_at + timedelta(minutes=1)
    fresh = services.lifecycle.create(request_payload(("carla@example.com",), expires_in_days=5), INITIATOR)

    result = services.sweeper.check_expirations(sweep_at)

    assert result.expired == 1
    assert result.errors == 0
    request = services.lifecycle.get(request_id).request
    assert request.status == RequestStatus.EXPIRED
    assert request.expired_at == sweep_at
    assert request.signed_count == 1
    assert services.lifecycle.get(fresh.request.id).request.status == RequestStatus.PENDING
    # Only the signer who had not signed yet and the initiator are told.
    assert sorted(notifier.emails("request_expired")) == ["bruno@example.com", "owner@example.com"]
    assert _event_types(services, request_id).count("expired") == 1

    again = services.sweeper.check_expirations(sweep_at + timedelta(hours=1))
    assert again.expired == 0
    assert len(notifier.events("request_expired")) == 1

    with pytest.raises(RequestExpired):
        services.signers.record_sign(detail.signers[1].id, typed_payload("Bruno"))


def test_drafts_expire_too(services) -> None:
    detail = services.lifecycle.create(request_payload(send=False, expires_in_days=1), INITIATOR)

    result = services.sweeper.check_expirations(detail.request.expires_at)

    assert result.expired == 1
    assert services.lifecycle.get(detail.request.id).request.status == RequestStatus.EXPIRED


def test_expire_does_not_touch_a_completed_request(services) -> None:
    detail = services.lifecycle.create(request_payload(("ana@example.com",), expires_in_days=1), INITIATOR)
    request_id = detail.request.id
    sweep_at = detail.request.expires_at + timedelta(days=1)
    services.signers.record_sign(detail.signers[0].id, typed_payload())

    assert services.lifecycle.expire(request_id, sweep_at) is False
    assert services.lifecycle.get(request_id).request.status == RequestStatus.COMPLETED


def test_expire_checks_the_deadline_again(services) -> None:
    detail = services.lifecycle.create(request_payload(expires_in_days=3), INITIATOR)

    assert services.lifecycle.expire(detail.request.id, detail.request.expires_at - timedelta(hours=1)) is False
    assert services.lifecycle.get(detail.request.id).request.status == RequestStatus.PENDING


def test_expiration_warning_is_sent_once(services, notifier) -> None:
    detail = services.lifecycle.create(request_payload(expires_in_days=2), INITIATOR)
    request_id = detail.request.id
    sweep_at = detail.request.expires_at - timedelta(hours=12)

    first = services.sweeper.check_expirations(sweep_at)
    second = services.sweeper.check_expirations(sweep_at + timedelta(hours=1))

    assert first.warnings_sent == 1
    assert second.warnings_sent == 0
    assert notifier.emails("expiration_warning") == ["ana@example.com"]
    request = services.lifecycle.get(request_id).request
    assert request.warning_sent_at == sweep_at
    assert request.warning_threshold_hours == 24
    assert _event_types(services, request_id).count("expiration_warning") == 1


def test_extending_rearms_the_warning(services, notifier) -> None:
    detail = services.lifecycle.create(request_payload(expires_in_days=2), INITIATOR)
    request_id = detail.request.id
    services.sweeper.check_expirations(detail.request.expires_at - timedelta(hours=12))

    extended = services.lifecycle.extend_expiration(request_id, 1, INITIATOR)
    assert extended.warning_sent_at is None

    result = services.sweeper.check_expirations(extended.expires_at - timedelta(hours=2))
    assert result.warnings_sent == 1
    assert len(notifier.events("expiration_warning")) == 2


def test_tighter_thresholds_warn_again(services, runtime, notifier) -> None:
    sweeper = ExpirationSweeper(
        services.gateway,
        services.lifecycle,
        services.finalizer,
        notifier=notifier,
        audit=runtime.audit,
        warning_hours=[72, 24],
    )
    detail = services.lifecycle.create(request_payload(expires_in_days=5), INITIATOR)
    expires_at = detail.request.expires_at

    assert sweeper.check_expirations(expires_at - timedelta(hours=100)).warnings_sent == 0
    assert sweeper.check_expirations(expires_at - timedelta(hours=60)).warnings_sent == 1
    assert sweeper.check_expirations(expires_at - timedelta(hours=48)).warnings_sent == 0
    assert sweeper.check_expirations(expires_at - timedelta(hours=12)).warnings_sent == 1
    assert sweeper.check_expirations(expires_at - timedelta(hours=6)).warnings_sent == 0

    request = services.lifecycle.get(detail.request.id).request
    assert request.warning_threshold_hours == 24


def test_expiration_racing_the_final_signature(services, make_services) -> None:
    detail = services.lifecycle.create(
        request_payload(("ana@example.com",), policy=SigningPolicy.PARALLEL, expires_in_days=1),
        INITIATOR,
    )
    request_id = detail.request.id
    signer_id = detail.signers[0].id
    sweep_at = detail.request.expires_at + timedelta(seconds=1)
    sign_services, sweep_services = make_services(), make_services()
    barrier = threading.Barrier(2)
    outcome: dict[str, object] = {}

    def _sign() -> None:
        barrier.wait()
        try:
            outcome["sign"] = sign_services.signers.record_sign(signer_id, typed_payload())
        except SigningError as exc:
            outcome["sign"] = exc

    def _sweep() -> None:
        barrier.wait()
        outcome["sweep"] = sweep_services.lifecycle.expire(request_id, sweep_at)

    threads = [threading.Thread(target=_sign), threading.Thread(target=_sweep)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    request = services.lifecycle.get(request_id).request
    signer = services.gateway.require_signer(signer_id)
    if request.status == RequestStatus.COMPLETED:
        assert outcome["sweep"] is False
        assert outcome["sign"].just_completed
        assert signer.status == SignerStatus.SIGNED
    else:
        assert request.status == RequestStatus.EXPIRED
        assert outcome["sweep"] is True
        assert isinstance(outcome["sign"], RequestExpired)
        assert signer.status == SignerStatus.PENDING
        assert request.signed_count == 0


def test_sweep_reminds_open_signers_once_per_interval(services, notifier) -> None:
    detail = services.lifecycle.create(request_payload(expires_in_days=10), INITIATOR)
    request_id = detail.request.id
    sent_at = detail.request.sent_at

    assert services.sweeper.check_expirations(sent_at + timedelta(hours=1)).reminders_sent == 0

    first = services.sweeper.check_expirations(sent_at + timedelta(hours=25))
    rerun = services.sweeper.check_expirations(sent_at + timedelta(hours=26))

    assert first.reminders_sent == 1
    assert first.errors == 0
    assert rerun.reminders_sent == 0
    assert notifier.emails("reminder") == ["ana@example.com"]

    later = services.sweeper.check_expirations(sent_at + timedelta(hours=49))
    assert later.reminders_sent == 1
    assert services.gateway.require_signer(detail.signers[0].id).reminder_count == 2
    assert services.gateway.require_signer(detail.signers[1].id).reminder_count == 0
    assert _event_types(services, request_id).count("reminder_sent") == 2


def test_sweep_without_reminders(services, runtime, notifier) -> None:
    sweeper = ExpirationSweeper(
        services.gateway,
        services.lifecycle,
        services.finalizer,
        notifier=notifier,
        audit=runtime.audit,
        send_reminders=False,
    )
    detail = services.lifecycle.create(request_payload(expires_in_days=10), INITIATOR)

    result = sweeper.check_expirations(detail.request.sent_at + timedelta(days=2))

    assert result.reminders_sent == 0
    assert notifier.events("reminder") == []


def test_request_without_deadline_never_expires(services, notifier) -> None:
    detail = services.lifecycle.create(request_payload(never_expires=True), INITIATOR)
    request_id = detail.request.id
    assert detail.request.expires_at is None

    result = services.sweeper.check_expirations(detail.request.created_at + timedelta(days=3650))

    assert result.expired == 0
    assert result.warnings_sent == 0
    assert services.lifecycle.get(request_id).request.status == RequestStatus.PENDING
    assert notifier.events("expiration_warning") == []
    with pytest.raises(ValidationError):
        services.lifecycle.extend_expiration(request_id, 1, INITIATOR)


def test_never_expires_rejects_an_explicit_deadline(services) -> None:
    with pytest.raises(ValidationError) as exc_info:
        services.lifecycle.create(request_payload(never_expires=True, expires_in_days=3), INITIATOR)

    assert exc_info.value.errors == ["expires_in_days cannot be combined with never_expires"]
