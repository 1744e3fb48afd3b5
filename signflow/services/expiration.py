from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Sequence
from uuid import UUID

from signflow.core.config import settings
from signflow.core.errors import SigningError
from signflow.core.logging_setup import logger
from signflow.core.retry import transient_retry
from signflow.models.base import utcnow
from signflow.services.audit import AuditWriter
from signflow.services.context import SYSTEM_ACTOR
from signflow.services.finalization import FinalizationEngine
from signflow.services.gateway import SigningGateway
from signflow.services.lifecycle import RequestLifecycleManager, actionable_signers
from signflow.services.notification import NotificationSender, Recipient


@dataclass
class SweepResult:
    checked: int = 0
    expired: int = 0
    warnings_sent: int = 0
    reminders_sent: int = 0
    finalized: int = 0
    errors: int = 0


class ExpirationSweeper:
    """Periodic pass over request deadlines.

    Every state change it makes is a guarded update, so it can run next to live
    signer traffic (and next to another sweeper) without locks.
    """

    def __init__(
        self,
        gateway: SigningGateway,
        lifecycle: RequestLifecycleManager,
        finalizer: FinalizationEngine,
        *,
        notifier: NotificationSender,
        audit: AuditWriter,
        batch_size: int | None = None,
        warning_hours: Sequence[int] | None = None,
        send_reminders: bool | None = None,
    ) -> None:
        self.gateway = gateway
        self.lifecycle = lifecycle
        self.finalizer = finalizer
        self.notifier = notifier
        self.audit = audit
        self.batch_size = batch_size or settings.sweeper_batch_size
        self.warning_hours = list(settings.expiration_warning_hours if warning_hours is None else warning_hours)
        self.send_reminders = settings.auto_reminders_enabled if send_reminders is None else send_reminders

    def check_expirations(self, now: datetime | None = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult()

        for request_id in self.gateway.find_expired_requests(now, self.batch_size):
            result.checked += 1
            try:
                if self.lifecycle.expire(request_id, now):
                    result.expired += 1
            except SigningError as exc:
                result.errors += 1
                logger.warning("Expiring request %s failed: %s", request_id, exc.message)

        # Tightest threshold first: a request is warned once for the closest deadline it crossed.
        for threshold in sorted({hours for hours in self.warning_hours if hours > 0}):
            for request_id in self.gateway.find_expiring_requests(now, threshold, self.batch_size):
                result.checked += 1
                try:
                    if self.warn(request_id, threshold, now):
                        result.warnings_sent += 1
                except SigningError as exc:
                    result.errors += 1
                    logger.warning("Expiration warning for request %s failed: %s", request_id, exc.message)

        if self.send_reminders:
            result.reminders_sent += self._send_reminders(now, result)

        finalized, failed = self.finalizer.retry_unfinalized(self.batch_size)
        result.finalized += finalized
        result.errors += failed

        logger.info("Expiration sweep finished: %s", asdict(result))
        return result

    @transient_retry
    def warn(self, request_id: UUID, threshold_hours: int, now: datetime) -> bool:
        with self.gateway.transaction():
            claimed = self.gateway.claim_expiration_warning(request_id, threshold_hours=threshold_hours, now=now)
        if not claimed:
            return False

        request = self.gateway.require_request(request_id)
        signers = actionable_signers(request, self.gateway.list_signers(request_id))
        self.notifier.send(
            "expiration_warning",
            [Recipient.for_signer(signer) for signer in signers],
            self.lifecycle.notification_context(request),
        )
        self.audit.record(
            "expiration_warning",
            request_id=request_id,
            details={"threshold_hours": threshold_hours, "expires_at": request.expires_at},
        )
        return True

    def _send_reminders(self, now: datetime, result: SweepResult) -> int:
        """Re-notify signers of sent requests who have not been reminded within the interval."""
        min_interval = timedelta(hours=settings.reminder_min_interval_hours)
        candidates = self.gateway.find_reminder_candidates(
            now, min_interval, settings.reminder_max_per_signer, self.batch_size
        )
        sent = 0
        for request_id in candidates:
            result.checked += 1
            try:
                sent += len(self.lifecycle.remind(request_id, SYSTEM_ACTOR, now))
            except SigningError as exc:
                result.errors += 1
                logger.warning("Reminders for request %s failed: %s", request_id, exc.message)
        return sent

    def run_forever(self, interval_seconds: float | None = None, stop_event: threading.Event | None = None) -> None:
        interval = interval_seconds or settings.sweeper_interval_seconds
        stop_event = stop_event or threading.Event()
        logger.info("Expiration sweeper running every %ss", interval)
        while not stop_event.is_set():
            try:
                self.check_expirations()
            except SigningError:
                logger.exception("Expiration sweep aborted")
            finally:
                # Release the connection between passes.
                self.gateway.session.close()
            stop_event.wait(interval)
