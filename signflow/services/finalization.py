from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Sequence
from uuid import UUID

from signflow.core.config import settings
from signflow.core.errors import Conflict, InternalError, SigningError
from signflow.core.logging_setup import logger
from signflow.core.retry import transient_retry
from signflow.models.base import utcnow
from signflow.models.signing import FieldType, PlacedField, RequestStatus, SignatureRequest, Signer, SignerStatus
from signflow.services.audit import AuditWriter
from signflow.services.gateway import SigningGateway
from signflow.services.renderer import ArtifactRenderer, ResolvedField


@dataclass(frozen=True)
class FinalizedArtifact:
    request_id: UUID
    artifact_ref: str
    sha256: str
    size: int | None = None
    rendered: bool = False


def _initials(name: str) -> str:
    return "".join(part[0] for part in name.split() if part).upper()


class FinalizationEngine:
    """Resolves every placed field from its owning signer and renders the final artifact."""

    def __init__(self, gateway: SigningGateway, renderer: ArtifactRenderer, audit: AuditWriter) -> None:
        self.gateway = gateway
        self.renderer = renderer
        self.audit = audit

    def resolve_fields(
        self,
        request: SignatureRequest,
        signers: Sequence[Signer],
        fields: Sequence[PlacedField],
    ) -> list[ResolvedField]:
        signers_by_id = {signer.id: signer for signer in signers}
        owned: dict[UUID, list[PlacedField]] = defaultdict(list)
        for field in fields:
            owned[field.signer_id].append(field)

        resolved: list[ResolvedField] = []
        for signer_id, signer_fields in owned.items():
            signer = signers_by_id.get(signer_id)
            if signer is None or signer.current_status != SignerStatus.SIGNED or not signer.payload:
                context = {
                    "request_id": str(request.id),
                    "signer_id": str(signer_id),
                    "signer_status": signer.current_status.value if signer else None,
                    "fields": sorted(field.name for field in signer_fields),
                }
                logger.error("Field owner has no captured payload: %s", context)
                raise InternalError("Field owner has no captured signature payload", context)
            for field in signer_fields:
                resolved.append(self._resolve_field(field, signer))
        return sorted(resolved, key=lambda item: (item.page, item.name))

    def _resolve_field(self, field: PlacedField, signer: Signer) -> ResolvedField:
        payload = signer.payload or {}
        field_values = payload.get("field_values") or {}
        field_type = FieldType(field.field_type)
        value: object = None
        is_image = False

        if field_type == FieldType.SIGNATURE:
            if payload.get("image_data"):
                value, is_image = payload["image_data"], True
            else:
                value = payload.get("typed_name") or signer.name
        elif field_type == FieldType.INITIALS:
            image = payload.get("initials_data") or payload.get("image_data")
            if image:
                value, is_image = image, True
            else:
                value = _initials(payload.get("typed_name") or signer.name)
        elif field_type == FieldType.TEXT:
            value = field_values.get(field.name) or signer.name
        elif field_type == FieldType.DATE:
            value = signer.signed_at.strftime("%Y-%m-%d") if signer.signed_at else None
        elif field_type == FieldType.CHECKBOX:
            value = bool(field_values.get(field.name))

        return ResolvedField(
            name=field.name,
            field_type=field_type,
            signer_id=signer.id,
            page=field.page,
            x=field.x,
            y=field.y,
            width=field.width,
            height=field.height,
            value=value,
            is_image=is_image,
        )

    @transient_retry
    def finalize(self, request_id: UUID) -> FinalizedArtifact:
        request = self.gateway.require_request(request_id)
        if request.artifact_ref:
            return FinalizedArtifact(request.id, request.artifact_ref, request.artifact_sha256 or "")
        if request.current_status != RequestStatus.COMPLETED:
            raise Conflict(
                "Only completed requests can be finalized",
                {"request_id": str(request_id), "status": request.current_status.value},
            )

        signers = self.gateway.list_signers(request_id)
        fields = self.gateway.list_fields(request_id)
        try:
            resolved = self.resolve_fields(request, signers, fields)
            rendered = self.renderer.render(resolved, request.document_ref, request_id=request.id)
        except InternalError as exc:
            self._record_failure(request_id, exc.message)
            raise
        except Exception as exc:
            logger.exception("Rendering the artifact for request %s failed", request_id)
            self._record_failure(request_id, f"{type(exc).__name__}: {exc}")
            raise InternalError("Artifact rendering failed", {"request_id": str(request_id)}) from exc

        with self.gateway.transaction():
            stored = self.gateway.store_artifact(
                request_id,
                ref=rendered.ref,
                sha256=rendered.sha256,
                now=utcnow(),
            )
        if not stored:
            current = self.gateway.require_request(request_id)
            if current.artifact_ref:
                logger.info("Request %s was finalized concurrently, keeping the stored artifact", request_id)
                return FinalizedArtifact(current.id, current.artifact_ref, current.artifact_sha256 or "")
            raise Conflict(
                "Request changed while it was being finalized",
                {"request_id": str(request_id), "status": current.current_status.value},
            )

        self.audit.record(
            "finalized",
            request_id=request_id,
            details={"artifact_ref": rendered.ref, "sha256": rendered.sha256, "size": rendered.size},
        )
        return FinalizedArtifact(request_id, rendered.ref, rendered.sha256, rendered.size, rendered=True)

    def _record_failure(self, request_id: UUID, error: str) -> None:
        with self.gateway.transaction():
            self.gateway.record_finalization_failure(request_id, error)
        self.audit.record("finalization_failed", request_id=request_id, details={"error": error})

    def retry_unfinalized(self, limit: int | None = None) -> tuple[int, int]:
        """Finalize completed requests that still have no artifact. Returns ``(finalized, failed)``."""
        finalized = failed = 0
        for request_id in self.gateway.find_unfinalized_requests(limit or settings.sweeper_batch_size):
            try:
                self.finalize(request_id)
            except SigningError as exc:
                failed += 1
                logger.warning("Finalization retry for request %s failed: %s", request_id, exc.message)
                continue
            finalized += 1
        return finalized, failed
