from __future__ import annotations

from dataclasses import dataclass

from sqlmodel import Session

from signflow.core.config import settings
from signflow.services.audit import AuditService, AuditWriter
from signflow.services.counter import CompletionCounter
from signflow.services.expiration import ExpirationSweeper
from signflow.services.finalization import FinalizationEngine
from signflow.services.gate import SigningGate
from signflow.services.gateway import SigningGateway
from signflow.services.lifecycle import RequestLifecycleManager
from signflow.services.notification import NotificationDispatcher, NotificationSender, NotificationService
from signflow.services.renderer import ArtifactRenderer, PdfArtifactRenderer
from signflow.services.signer import SignerService
from signflow.services.storage import StorageBackend, get_storage
from signflow.services.verification import TotpCodeVerifier


@dataclass
class SigningRuntime:
    """Process-wide collaborators shared by every request's services."""

    audit: AuditWriter
    notifier: NotificationSender
    renderer: ArtifactRenderer

    def start(self) -> None:
        self.audit.start()
        if hasattr(self.notifier, "start"):
            self.notifier.start()

    def flush(self) -> None:
        if hasattr(self.notifier, "flush"):
            self.notifier.flush()
        self.audit.flush()

    def stop(self) -> None:
        if hasattr(self.notifier, "stop"):
            self.notifier.stop()
        self.audit.stop()


def build_runtime(*, synchronous: bool = False, storage: StorageBackend | None = None) -> SigningRuntime:
    audit = AuditWriter(synchronous=synchronous)
    sender = NotificationService()
    sender.apply_settings(settings)
    notifier = NotificationDispatcher(sender, audit, synchronous=synchronous)
    renderer = PdfArtifactRenderer(storage or get_storage())
    return SigningRuntime(audit=audit, notifier=notifier, renderer=renderer)


@dataclass
class SigningServices:
    gateway: SigningGateway
    counter: CompletionCounter
    lifecycle: RequestLifecycleManager
    signers: SignerService
    finalizer: FinalizationEngine
    verifier: TotpCodeVerifier
    gate: SigningGate
    sweeper: ExpirationSweeper
    audit_log: AuditService


def build_services(session: Session, runtime: SigningRuntime) -> SigningServices:
    gateway = SigningGateway(session)
    counter = CompletionCounter(gateway)
    finalizer = FinalizationEngine(gateway, runtime.renderer, runtime.audit)
    lifecycle = RequestLifecycleManager(
        gateway,
        counter,
        audit=runtime.audit,
        notifier=runtime.notifier,
        finalizer=finalizer,
    )
    signers = SignerService(gateway, lifecycle, runtime.audit)
    return SigningServices(
        gateway=gateway,
        counter=counter,
        lifecycle=lifecycle,
        signers=signers,
        finalizer=finalizer,
        verifier=TotpCodeVerifier(gateway, runtime.notifier, runtime.audit),
        gate=SigningGate(gateway, signers, runtime.audit),
        sweeper=ExpirationSweeper(
            gateway,
            lifecycle,
            finalizer,
            notifier=runtime.notifier,
            audit=runtime.audit,
        ),
        audit_log=AuditService(session),
    )


__all__ = [
    "AuditService",
    "AuditWriter",
    "CompletionCounter",
    "ExpirationSweeper",
    "FinalizationEngine",
    "NotificationDispatcher",
    "NotificationService",
    "RequestLifecycleManager",
    "SignerService",
    "SigningGate",
    "SigningGateway",
    "SigningRuntime",
    "SigningServices",
    "TotpCodeVerifier",
    "build_runtime",
    "build_services",
]
