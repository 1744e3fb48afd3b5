from signflow.schemas import audit, common, signing

__all__ = [
    "audit",
    "common",
    "signing",
]
