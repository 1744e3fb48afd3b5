from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from signflow.core.config import settings
from signflow.core.errors import AlreadyFinal, Conflict, NotFound, RequestCancelled, ValidationError
from signflow.models.base import utcnow
from signflow.models.signing import NotificationChannel, RequestStatus, SignerStatus, SigningPolicy
from signflow.schemas.signing import FieldCreate, SignatureRequestCreate, SignerCreate
from signflow.services.context import ActorContext
from signflow.services.gateway import RequestFilter

from .conftest import INITIATOR, request_payload, typed_payload


def _event_types(services, request_id) -> list[str]:
    items, _ = services.audit_log.list_events(request_id=request_id, page_size=500)
    return [item.event_type for item in items]


def test_create_reports_every_violation(services) -> None:
    payload = SignatureRequestCreate(
        document_ref="documents/contract.pdf",
        title="   ",
        expires_in_days=0,
        signers=[
            SignerCreate(email="ana@example.com", name="Ana"),
            SignerCreate(email="ANA@example.com", name="Ana again"),
            SignerCreate(email="carla@example.com", name="Carla", notification_channel=NotificationChannel.SMS),
        ],
        fields=[
            FieldCreate(name="signature", signer_email="zed@example.com"),
            FieldCreate(name="signature", signer_email="ana@example.com", x=0.9, width=0.2),
        ],
    )

    with pytest.raises(ValidationError) as exc_info:
        services.lifecycle.create(payload, INITIATOR)

    errors = exc_info.value.errors
    assert "title must not be blank" in errors
    assert any("duplicate email" in error for error in errors)
    assert any("phone_number is required" in error for error in errors)
    assert any("unknown signer zed@example.com" in error for error in errors)
    assert any("duplicate field name" in error for error in errors)
    assert any("does not fit on the page" in error for error in errors)
    assert any("expires_in_days" in error for error in errors)
    assert exc_info.value.details == {"errors": errors}

    _, total = services.lifecycle.list()
    assert total == 0


def test_create_requires_signers(services) -> None:
    with pytest.raises(ValidationError) as exc_info:
        services.lifecycle.create(request_payload(emails=(), with_fields=False), INITIATOR)
    assert "at least one signer is required" in exc_info.value.errors


def test_create_sequential_assigns_orders_and_notifies_first_signer(services, notifier) -> None:
    detail = services.lifecycle.create(
        request_payload(("ana@example.com", "bruno@example.com", "carla@example.com")),
        INITIATOR,
    )

    request = detail.request
    assert request.status == RequestStatus.PENDING
    assert request.total_signers == 3
    assert request.signed_count == request.viewed_count == request.declined_count == 0
    assert request.initiator_id == "initiator-1"
    assert request.sent_at is not None
    lifetime = request.expires_at - request.created_at
    assert abs(lifetime - timedelta(days=settings.default_expiration_days)) < timedelta(seconds=5)
    assert [signer.signing_order for signer in detail.signers] == [1, 2, 3]
    assert all(signer.status == SignerStatus.PENDING for signer in detail.signers)
    assert {field.signer_id for field in detail.fields} == {signer.id for signer in detail.signers}

    assert notifier.emails("signature_requested") == ["ana@example.com"]
    assert _event_types(services, request.id) == ["created", "sent"]


def test_create_parallel_notifies_everyone(services, notifier) -> None:
    detail = services.lifecycle.create(request_payload(policy=SigningPolicy.PARALLEL), INITIATOR)

    assert [signer.signing_order for signer in detail.signers] == [1, 1]
    assert sorted(notifier.emails("signature_requested")) == ["ana@example.com", "bruno@example.com"]


def test_draft_is_sent_once(services, notifier) -> None:
    detail = services.lifecycle.create(request_payload(send=False), INITIATOR)
    request_id = detail.request.id
    assert detail.request.status == RequestStatus.DRAFT
    assert notifier.sent == []

    signer_id = detail.signers[0].id
    with pytest.raises(Conflict):
        services.signers.record_sign(signer_id, typed_payload())

    sent = services.lifecycle.send(request_id, INITIATOR)
    assert sent.status == RequestStatus.PENDING
    assert sent.sent_at is not None
    assert notifier.emails("signature_requested") == ["ana@example.com"]

    with pytest.raises(Conflict) as exc_info:
        services.lifecycle.send(request_id, INITIATOR)
    assert exc_info.value.details["status"] == "pending"


def test_get_unknown_request_raises_not_found(services) -> None:
    with pytest.raises(NotFound):
        services.lifecycle.get(uuid4())


def test_cancel_is_idempotent(services, notifier) -> None:
    detail = services.lifecycle.create(request_payload(), INITIATOR)
    request_id = detail.request.id

    first = services.lifecycle.cancel(request_id, INITIATOR)
    second = services.lifecycle.cancel(request_id, INITIATOR)

    assert first.status == second.status == RequestStatus.CANCELLED
    assert first.cancelled_at == second.cancelled_at
    assert _event_types(services, request_id).count("cancelled") == 1
    assert len(notifier.events("request_cancelled")) == 1
    # Open signers and the initiator hear about it.
    assert sorted(notifier.emails("request_cancelled")) == [
        "ana@example.com",
        "bruno@example.com",
        "owner@example.com",
    ]

    with pytest.raises(RequestCancelled):
        services.signers.record_view(detail.signers[0].id)


def test_cancel_completed_request_is_rejected(services) -> None:
    detail = services.lifecycle.create(request_payload(("ana@example.com",)), INITIATOR)
    services.signers.record_sign(detail.signers[0].id, typed_payload())

    with pytest.raises(AlreadyFinal):
        services.lifecycle.cancel(detail.request.id, INITIATOR)
    assert services.lifecycle.get(detail.request.id).request.status == RequestStatus.COMPLETED


def test_list_filters_and_pages(services) -> None:
    other = ActorContext(actor_id="initiator-2")
    first = services.lifecycle.create(request_payload(), INITIATOR)
    services.lifecycle.create(request_payload(("carla@example.com",)), INITIATOR)
    parallel = services.lifecycle.create(request_payload(policy=SigningPolicy.PARALLEL, send=False), other)
    services.lifecycle.cancel(first.request.id, INITIATOR)

    items, total = services.lifecycle.list()
    assert total == 3

    items, total = services.lifecycle.list(RequestFilter(initiator_id="initiator-2"))
    assert total == 1
    assert items[0].id == parallel.request.id

    items, total = services.lifecycle.list(RequestFilter(policy=SigningPolicy.PARALLEL))
    assert [item.id for item in items] == [parallel.request.id]

    items, total = services.lifecycle.list(RequestFilter(status=RequestStatus.CANCELLED))
    assert [item.id for item in items] == [first.request.id]

    _, total = services.lifecycle.list(RequestFilter(signer_email="Bruno@Example.com"))
    assert total == 2

    items, total = services.lifecycle.list(page=2, page_size=2)
    assert total == 3
    assert len(items) == 1


def test_extend_expiration(services) -> None:
    detail = services.lifecycle.create(request_payload(expires_in_days=10), INITIATOR)
    request = detail.request
    original, version = request.expires_at, request.version

    extended = services.lifecycle.extend_expiration(request.id, 5, INITIATOR)
    assert extended.expires_at - original == timedelta(days=5)
    assert extended.version == version + 1
    assert "expiration_extended" in _event_types(services, request.id)

    with pytest.raises(ValidationError):
        services.lifecycle.extend_expiration(request.id, 0, INITIATOR)
    with pytest.raises(ValidationError):
        services.lifecycle.extend_expiration(request.id, settings.max_expiration_days, INITIATOR)

    services.lifecycle.cancel(request.id, INITIATOR)
    with pytest.raises(RequestCancelled):
        services.lifecycle.extend_expiration(request.id, 1, INITIATOR)


def test_remind_respects_interval_and_order(services, notifier) -> None:
    detail = services.lifecycle.create(request_payload(), INITIATOR)
    request_id = detail.request.id

    reminded = services.lifecycle.remind(request_id, INITIATOR)
    assert [signer.email for signer in reminded] == ["ana@example.com"]
    assert reminded[0].reminder_count == 1
    assert notifier.emails("reminder") == ["ana@example.com"]

    assert services.lifecycle.remind(request_id, INITIATOR) == []

    later = reminded[0].last_reminded_at + timedelta(hours=settings.reminder_min_interval_hours)
    again = services.lifecycle.remind(request_id, INITIATOR, now=later)
    assert [signer.reminder_count for signer in again] == [2]
    assert _event_types(services, request_id).count("reminder_sent") == 2


def test_timestamps_are_stored_as_naive_utc(services) -> None:
    detail = services.lifecycle.create(request_payload(expires_in_days=2), INITIATOR)

    request = services.lifecycle.get(detail.request.id).request

    assert request.created_at.tzinfo is None
    assert request.sent_at.tzinfo is None
    assert abs(request.created_at - utcnow()) < timedelta(minutes=1)
    assert request.expires_at - request.sent_at == timedelta(days=2)
