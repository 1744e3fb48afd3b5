# noqa: F401 to ensure models are imported for metadata
from signflow.models.audit import AuditEvent
from signflow.models.signing import PlacedField, SignatureRequest, Signer
from signflow.models.verification import VerifiedSession

__all__ = [
    "AuditEvent",
    "PlacedField",
    "SignatureRequest",
    "Signer",
    "VerifiedSession",
]
