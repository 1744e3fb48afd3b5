from __future__ import annotations

import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence
from uuid import UUID

from jinja2 import Environment, FileSystemLoader, select_autoescape
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from signflow.core.config import Settings, settings
from signflow.core.logging_setup import logger
from signflow.models.signing import NotificationChannel, Signer
from signflow.services.audit import AuditWriter
from signflow.services.outbox import BackgroundQueue

EVENT_SUBJECTS: dict[str, str] = {
    "signature_requested": "Signature requested: {title}",
    "reminder": "Reminder: {title} is waiting for your signature",
    "signing_code": "Your signing code for {title}",
    "expiration_warning": "{title} expires soon",
    "request_expired": "{title} has expired",
    "request_completed": "{title} has been signed by everyone",
    "request_declined": "{title} was declined",
    "request_cancelled": "{title} was cancelled",
}

DELIVERY_ERRORS = (smtplib.SMTPException, OSError, TwilioException)


@dataclass
class EmailConfig:
    host: str
    port: int
    username: str | None
    password: str | None
    sender: str
    starttls: bool


@dataclass
class SMSConfig:
    account_sid: str
    auth_token: str
    from_number: str | None
    messaging_service_sid: str | None


@dataclass
class Recipient:
    name: str | None
    email: str | None = None
    phone_number: str | None = None
    channel: NotificationChannel = NotificationChannel.EMAIL
    signer_id: UUID | None = None

    @classmethod
    def for_signer(cls, signer: Signer) -> Recipient:
        return cls(
            name=signer.name,
            email=signer.email,
            phone_number=signer.phone_number,
            channel=NotificationChannel(signer.notification_channel),
            signer_id=signer.id,
        )


@dataclass
class Delivery:
    event: str
    recipient: Recipient
    context: dict[str, Any] = field(default_factory=dict)


class NotificationSender(Protocol):
    def send(self, event: str, recipients: Sequence[Recipient], context: dict[str, Any]) -> None:
        ...


class NotificationService:
    """Renders and delivers one notification to one recipient over email or SMS."""

    def __init__(
        self,
        email_config: Optional[EmailConfig] = None,
        sms_config: Optional[SMSConfig] = None,
        public_base_url: str | None = None,
        template_root: Path | None = None,
    ) -> None:
        self.email_config = email_config
        self.sms_config = sms_config
        self.public_base_url = public_base_url
        self.template_root = template_root or Path(__file__).resolve().parent.parent / "templates"
        self.template_env = Environment(
            loader=FileSystemLoader(self.template_root),
            autoescape=select_autoescape(["html", "xml"]),
        )

    def apply_settings(self, config: Settings) -> None:
        self.public_base_url = config.resolved_public_app_url()
        if config.smtp_host and config.smtp_sender:
            self.configure_email(
                host=config.smtp_host,
                port=int(config.smtp_port),
                sender=config.smtp_sender,
                username=config.smtp_username,
                password=config.smtp_password,
                starttls=config.smtp_starttls,
            )
        if config.twilio_account_sid and config.twilio_auth_token:
            self.configure_sms(
                account_sid=config.twilio_account_sid,
                auth_token=config.twilio_auth_token,
                from_number=config.twilio_from_number,
                messaging_service_sid=config.twilio_messaging_service_sid,
            )

    def configure_email(
        self,
        host: str,
        port: int,
        sender: str,
        username: str | None = None,
        password: str | None = None,
        starttls: bool = True,
    ) -> None:
        self.email_config = EmailConfig(
            host=host,
            port=port,
            username=username,
            password=password,
            sender=sender,
            starttls=starttls,
        )

    def configure_sms(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str | None = None,
        messaging_service_sid: str | None = None,
    ) -> None:
        self.sms_config = SMSConfig(
            account_sid=account_sid,
            auth_token=auth_token,
            from_number=from_number,
            messaging_service_sid=messaging_service_sid,
        )

    def build_action_link(self, signer_id: UUID | None) -> str | None:
        if not signer_id or not self.public_base_url:
            return None
        return f"{self.public_base_url.rstrip('/')}/sign/{signer_id}"

    def render(self, event: str, recipient: Recipient, context: dict[str, Any]) -> tuple[str, str, str]:
        """Return ``(subject, html_body, text_body)`` for an event."""
        values = {
            "recipient_name": recipient.name or recipient.email or "",
            "action_link": self.build_action_link(recipient.signer_id),
            **context,
        }
        subject = EVENT_SUBJECTS.get(event, "{title}").format(title=values.get("title", "Signature request"))
        html_body = self.template_env.get_template(f"email/{event}.html").render(**values)
        text_body = self.template_env.get_template(f"sms/{event}.txt").render(**values).strip()
        return subject, html_body, text_body

    def deliver(self, event: str, recipient: Recipient, context: dict[str, Any]) -> bool:
        """Send one notification. Returns False when it was skipped; transport errors propagate."""
        channel = NotificationChannel(recipient.channel)
        subject, html_body, text_body = self.render(event, recipient, context)

        if channel == NotificationChannel.SMS:
            if not self.sms_config or not recipient.phone_number:
                logger.info("SMS %s skipped for %s: sender or phone missing", event, recipient.signer_id)
                return False
            self._send_sms(to=recipient.phone_number, body=text_body)
            return True

        if not self.email_config or not recipient.email:
            logger.info("Email %s skipped for %s: sender or address missing", event, recipient.signer_id)
            return False
        self._send_email(to=recipient.email, subject=subject, html_body=html_body, text_body=text_body)
        return True

    def _send_sms(self, *, to: str, body: str) -> None:
        if not self.sms_config:
            raise RuntimeError("SMS sender not configured")
        message_kwargs: dict[str, Any] = {"to": to, "body": body}
        if self.sms_config.messaging_service_sid:
            message_kwargs["messaging_service_sid"] = self.sms_config.messaging_service_sid
        elif self.sms_config.from_number:
            message_kwargs["from_"] = self.sms_config.from_number
        else:
            raise RuntimeError("SMS sender not configured")
        client = Client(self.sms_config.account_sid, self.sms_config.auth_token)
        client.messages.create(**message_kwargs)

    def _send_email(self, *, to: str, subject: str, html_body: str, text_body: str | None = None) -> None:
        if not self.email_config:
            raise RuntimeError("Email sender not configured")

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.email_config.sender
        message["To"] = to
        message.set_content(text_body or "", subtype="plain", charset="utf-8")
        message.add_alternative(html_body, subtype="html", charset="utf-8")

        with smtplib.SMTP(self.email_config.host, self.email_config.port, timeout=30) as smtp:
            if self.email_config.starttls:
                smtp.starttls()
            if self.email_config.username and self.email_config.password:
                smtp.login(self.email_config.username, self.email_config.password)
            smtp.send_message(message)


class NotificationDispatcher:
    """Fire-and-forget front of :class:`NotificationService`.

    ``send`` queues one delivery per recipient. The worker retries transport
    errors with exponential backoff; a delivery that still fails is logged and
    audited, never raised back to the signing flow.
    """

    def __init__(
        self,
        service: NotificationService,
        audit: AuditWriter | None = None,
        *,
        synchronous: bool = False,
        max_attempts: int | None = None,
        wait_seconds: float | None = None,
    ) -> None:
        self.service = service
        self.audit = audit
        self.max_attempts = max(max_attempts or settings.notification_retry_attempts, 1)
        self.wait_seconds = settings.notification_retry_wait_seconds if wait_seconds is None else wait_seconds
        self.queue: BackgroundQueue[Delivery] = BackgroundQueue(
            "notifications", self._deliver, synchronous=synchronous
        )

    def start(self) -> None:
        self.queue.start()

    def stop(self) -> None:
        self.queue.stop()

    def flush(self) -> None:
        self.queue.drain()

    def send(self, event: str, recipients: Sequence[Recipient], context: dict[str, Any]) -> None:
        for recipient in recipients:
            self.queue.submit(Delivery(event=event, recipient=recipient, context=dict(context)))

    def _deliver(self, delivery: Delivery) -> None:
        request_id = delivery.context.get("request_id")
        details = {"event": delivery.event, "channel": NotificationChannel(delivery.recipient.channel).value}
        try:
            for attempt in Retrying(
                reraise=True,
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.wait_seconds, max=10),
                retry=retry_if_exception_type(DELIVERY_ERRORS),
            ):
                with attempt:
                    sent = self.service.deliver(delivery.event, delivery.recipient, delivery.context)
        except (*DELIVERY_ERRORS, RuntimeError) as exc:
            logger.warning(
                "Notification %s to signer %s failed: %s",
                delivery.event,
                delivery.recipient.signer_id,
                exc,
            )
            self._audit("notification_failed", request_id, delivery, {**details, "reason": str(exc)})
            return
        self._audit("notification_sent" if sent else "notification_skipped", request_id, delivery, details)

    def _audit(self, event_type: str, request_id: Any, delivery: Delivery, details: dict[str, Any]) -> None:
        if not self.audit:
            return
        self.audit.record(
            event_type,
            request_id=UUID(str(request_id)) if request_id else None,
            signer_id=delivery.recipient.signer_id,
            details=details,
        )
