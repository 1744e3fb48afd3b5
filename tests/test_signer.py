from __future__ import annotations

import pytest

from signflow.core.errors import AlreadyFinal, OrderViolation, RequestDeclined, ValidationError
from signflow.models.base import utcnow
from signflow.models.signing import RequestStatus, SignerStatus, SigningPolicy
from signflow.schemas.signing import SignaturePayload
from signflow.services.context import ActorContext

from .conftest import INITIATOR, png_data_url, request_payload, typed_payload

SIGNER_ACTOR = ActorContext(actor_id=None, ip_address="10.0.0.7", user_agent="Mozilla/5.0")


def _event_types(services, request_id) -> list[str]:
    items, _ = services.audit_log.list_events(request_id=request_id, page_size=500)
    return [item.event_type for item in items]


def test_view_is_counted_once(services) -> None:
    detail = services.lifecycle.create(request_payload(), INITIATOR)
    signer_id = detail.signers[0].id

    first = services.signers.record_view(signer_id, SIGNER_ACTOR)
    assert first.signer.status == SignerStatus.VIEWED
    assert first.signer.viewed_at is not None
    assert first.tally is not None
    assert first.tally.viewed_count == 1
    assert first.tally.status == RequestStatus.IN_PROGRESS

    second = services.signers.record_view(signer_id, SIGNER_ACTOR)
    assert second.tally is None
    assert second.signer.viewed_at == first.signer.viewed_at

    request = services.lifecycle.get(detail.request.id).request
    assert request.viewed_count == 1
    assert request.signed_count == 0
    assert _event_types(services, request.id).count("viewed") == 1


def test_sequential_example_scenario(services, renderer) -> None:
    detail = services.lifecycle.create(request_payload(), INITIATOR)
    request_id = detail.request.id
    signer_a, signer_b = detail.signers
    signer_a_id, signer_b_id = signer_a.id, signer_b.id

    with pytest.raises(OrderViolation) as exc_info:
        services.signers.record_sign(signer_b_id, typed_payload("Bruno"), SIGNER_ACTOR)
    assert exc_info.value.details["waiting_for"] == [str(signer_a_id)]

    after_a = services.signers.record_sign(signer_a_id, typed_payload("Ana Souza"), SIGNER_ACTOR)
    assert after_a.tally.viewed_count == 0
    assert after_a.tally.signed_count == 1
    assert after_a.tally.status == RequestStatus.IN_PROGRESS
    assert not after_a.just_completed
    assert renderer.calls == []

    after_b = services.signers.record_sign(signer_b_id, typed_payload("Bruno Lima"), SIGNER_ACTOR)
    assert after_b.tally.signed_count == 2
    assert after_b.tally.status == RequestStatus.COMPLETED
    assert after_b.just_completed

    assert len(renderer.calls) == 1
    rendered_request, fields = renderer.calls[0]
    assert rendered_request == request_id
    values = {field.name: (field.signer_id, field.value) for field in fields}
    assert values == {
        "signature_0": (signer_a_id, "Ana Souza"),
        "signature_1": (signer_b_id, "Bruno Lima"),
    }

    request = services.lifecycle.get(request_id).request
    assert request.status == RequestStatus.COMPLETED
    assert request.completed_at is not None
    assert request.artifact_ref is not None
    assert request.artifact_sha256 is not None
    assert _event_types(services, request_id)[-3:] == ["signed", "completed", "finalized"]


def test_next_sequential_signer_is_notified(services, notifier) -> None:
    detail = services.lifecycle.create(request_payload(), INITIATOR)
    services.signers.record_sign(detail.signers[0].id, typed_payload())

    assert notifier.emails("signature_requested") == ["ana@example.com", "bruno@example.com"]


def test_parallel_signers_sign_in_any_order(services, notifier) -> None:
    detail = services.lifecycle.create(request_payload(policy=SigningPolicy.PARALLEL), INITIATOR)
    signer_a, signer_b = detail.signers
    signer_a_id = signer_a.id

    outcome = services.signers.record_sign(signer_b.id, typed_payload("Bruno"))
    assert outcome.tally.status == RequestStatus.IN_PROGRESS

    outcome = services.signers.record_sign(signer_a_id, typed_payload("Ana"))
    assert outcome.just_completed
    assert sorted(notifier.emails("request_completed")) == [
        "ana@example.com",
        "bruno@example.com",
        "owner@example.com",
    ]


def test_sign_stores_payload_and_client_details(services) -> None:
    detail = services.lifecycle.create(request_payload(("ana@example.com",)), INITIATOR)
    image = png_data_url()

    outcome = services.signers.record_sign(
        detail.signers[0].id,
        SignaturePayload(image_data=image, method="drawn"),
        SIGNER_ACTOR,
    )

    signer = outcome.signer
    assert signer.status == SignerStatus.SIGNED
    assert signer.signed_at is not None
    assert signer.payload["image_data"] == image
    assert signer.signer_ip == "10.0.0.7"
    assert signer.signer_user_agent == "Mozilla/5.0"


def test_sign_twice_is_rejected(services) -> None:
    detail = services.lifecycle.create(request_payload(policy=SigningPolicy.PARALLEL), INITIATOR)
    signer_id = detail.signers[0].id
    services.signers.record_sign(signer_id, typed_payload())

    with pytest.raises(AlreadyFinal):
        services.signers.record_sign(signer_id, typed_payload())

    request = services.lifecycle.get(detail.request.id).request
    assert request.signed_count == 1


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        (SignaturePayload(), "payload requires image_data or typed_name"),
        (SignaturePayload(image_data="not base64!"), "image_data: image data is not valid base64"),
        (SignaturePayload(typed_name="Ana", field_values={"signature_1": "x"}), "is not a field of this signer"),
    ],
)
def test_invalid_payload_is_rejected(services, payload: SignaturePayload, expected: str) -> None:
    detail = services.lifecycle.create(request_payload(policy=SigningPolicy.PARALLEL), INITIATOR)
    signer_id = detail.signers[0].id

    with pytest.raises(ValidationError) as exc_info:
        services.signers.record_sign(signer_id, payload)

    assert any(expected in error for error in exc_info.value.errors)
    assert services.gateway.require_signer(signer_id).status == SignerStatus.PENDING


def test_order_guard_holds_in_the_store(services) -> None:
    detail = services.lifecycle.create(request_payload(), INITIATOR)
    signer_b = detail.signers[1]

    # Skip the service pre-check: the conditional update alone must refuse.
    with services.gateway.transaction():
        signed = services.gateway.mark_signer_signed(
            signer_b,
            payload={"typed_name": "Bruno"},
            now=utcnow(),
            ip=None,
            user_agent=None,
            enforce_order=True,
        )
    assert signed is False
    assert services.gateway.require_signer(signer_b.id).status == SignerStatus.PENDING


def test_decline_aborts_the_request(services, notifier) -> None:
    detail = services.lifecycle.create(request_payload(policy=SigningPolicy.PARALLEL), INITIATOR)
    request_id = detail.request.id
    signer_a, signer_b = detail.signers
    signer_a_id, signer_b_id = signer_a.id, signer_b.id

    outcome = services.signers.record_decline(signer_a_id, "  Wrong amount  ", SIGNER_ACTOR)
    assert outcome.signer.status == SignerStatus.DECLINED
    assert outcome.signer.declined_reason == "Wrong amount"
    assert outcome.tally.status == RequestStatus.DECLINED
    assert outcome.tally.declined_count == 1

    with pytest.raises(RequestDeclined):
        services.signers.record_sign(signer_b_id, typed_payload("Bruno"))
    with pytest.raises(RequestDeclined):
        services.signers.record_decline(signer_b_id)

    request = services.lifecycle.get(request_id).request
    assert request.status == RequestStatus.DECLINED
    assert request.declined_at is not None
    assert request.signed_count == 0

    assert sorted(notifier.emails("request_declined")) == ["bruno@example.com", "owner@example.com"]
    _, _, context = notifier.events("request_declined")[0]
    assert context["declined_by"] == "Ana"
    assert context["reason"] == "Wrong amount"
    assert {"declined", "request_declined"} <= set(_event_types(services, request_id))
