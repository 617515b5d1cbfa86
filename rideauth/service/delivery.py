from __future__ import annotations

import html
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from rideauth.logging import get_logger, redact_email, redact_phone
from rideauth.storage.models import Account, Purpose

logger = get_logger(__name__)

TEMPLATE_FOR_PURPOSE = {
    Purpose.EMAIL: "verification",
    Purpose.SMS: "verification",
    Purpose.PASSWORD_RESET: "password-reset",
    Purpose.TWO_FACTOR: "two-factor",
}

_EMAIL_TEMPLATES: Dict[str, Dict[str, str]] = {
    "verification": {
        "subject": "Verify your Elyte Platform account",
        "text": (
            "Hi {name},\n\n"
            "Thank you for joining Elyte Platform. Use this code to verify your account:\n\n"
            "{code}\n\n"
            "The code expires in {expires_minutes} minutes. If you did not create an "
            "account, ignore this email.\n"
        ),
    },
    "password-reset": {
        "subject": "Reset your Elyte Platform password",
        "text": (
            "Hi {name},\n\n"
            "We received a request to reset your password. Use this code to continue:\n\n"
            "{code}\n\n"
            "The code expires in {expires_minutes} minutes. If you did not request a "
            "reset, your password stays unchanged.\n"
        ),
    },
    "two-factor": {
        "subject": "Your Elyte Platform sign-in code",
        "text": (
            "Hi {name},\n\n"
            "Your two-factor authentication code is:\n\n"
            "{code}\n\n"
            "The code expires in {expires_minutes} minutes.\n"
        ),
    },
}

_SMS_TEMPLATES = {
    Purpose.SMS: (
        "Your Elyte Platform verification code is: {code}. It expires in "
        "{expires_minutes} minutes. Do not share this code with anyone."
    ),
    Purpose.PASSWORD_RESET: (
        "Your Elyte Platform password reset code is: {code}. It expires in "
        "{expires_minutes} minutes."
    ),
    Purpose.TWO_FACTOR: (
        "Your Elyte Platform 2FA code is: {code}. It expires in {expires_minutes} minutes."
    ),
}


class EmailSender(Protocol):
    def send_email(self, address: str, template_id: str, params: Mapping[str, Any]) -> bool: ...


class SmsSender(Protocol):
    def send_sms(self, phone_number: str, message: str) -> bool: ...


def _html_from_text(text_body: str) -> str:
    # Template params such as the display name are caller-supplied text
    paragraphs = "".join(
        f"<p>{html.escape(block)}</p>" for block in text_body.strip().split("\n\n")
    )
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head>"
        f"<body><div style=\"max-width: 600px; margin: 0 auto;\">{paragraphs}</div></body></html>"
    )


class SmtpEmailSender:
    """Transactional email over SMTP.

    Falls back to logging the message when no SMTP host or sender address
    is configured (dev mode).
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Elyte Platform",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def render(self, template_id: str, params: Mapping[str, Any]) -> tuple[str, str]:
        template = _EMAIL_TEMPLATES.get(template_id) or _EMAIL_TEMPLATES["verification"]
        values = {"name": "there", **params}
        return template["subject"], template["text"].format(**values)

    def send_email(self, address: str, template_id: str, params: Mapping[str, Any]) -> bool:
        subject, text_body = self.render(template_id, params)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(address),
                template_id=template_id,
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = address
            msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(_html_from_text(text_body), "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, address, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, address, msg.as_string())

            logger.info("email_sent", to=redact_email(address), template_id=template_id)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(address),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(address), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(address),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(address),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False


class HttpSmsSender:
    """SMS delivery through an HTTP gateway accepting a JSON message body."""

    def __init__(
        self,
        *,
        gateway_url: Optional[str] = None,
        api_token: Optional[str] = None,
        sender_id: str = "Elyte",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.gateway_url = gateway_url
        self.api_token = api_token
        self.sender_id = sender_id
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def is_configured(self) -> bool:
        return bool(self.gateway_url)

    def send_sms(self, phone_number: str, message: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", to=redact_phone(phone_number), length=len(message))
            return True
        headers = {"Authorization": f"Bearer {self.api_token}"} if self.api_token else {}
        try:
            response = self._client.post(
                self.gateway_url,
                json={"to": phone_number, "from": self.sender_id, "message": message},
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_gateway_rejected",
                to=redact_phone(phone_number),
                status=exc.response.status_code,
            )
            return False
        except httpx.HTTPError as exc:
            logger.error(
                "sms_gateway_unreachable",
                to=redact_phone(phone_number),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("sms_sent", to=redact_phone(phone_number))
        return True

    def close(self) -> None:
        self._client.close()


@dataclass(frozen=True)
class DeliveryReport:
    email_sent: bool
    sms_sent: bool

    @property
    def delivered(self) -> bool:
        return self.email_sent or self.sms_sent


class CodeDelivery:
    """Sends an issued code to the account's channels.

    Email always goes out; SMS only for phone verification and two-factor.
    Sender failures are logged and reported, never raised, so a created
    record stays valid and resend remains the recovery path.
    """

    def __init__(self, email: EmailSender, sms: SmsSender) -> None:
        self.email = email
        self.sms = sms

    def deliver(
        self,
        account: Account,
        purpose: Purpose | str,
        code: str,
        *,
        expires_minutes: int,
        name: Optional[str] = None,
    ) -> DeliveryReport:
        purpose = Purpose(purpose)
        params = {"code": code, "expires_minutes": expires_minutes}
        if name:
            params["name"] = name
        email_sent = self._send_email(account, TEMPLATE_FOR_PURPOSE[purpose], params)
        sms_sent = False
        if purpose in (Purpose.SMS, Purpose.TWO_FACTOR):
            if account.phone:
                sms_sent = self._send_sms(account, _SMS_TEMPLATES[purpose].format(**params))
            else:
                logger.warning("sms_delivery_skipped", account_id=account.id, reason="no_phone")
        report = DeliveryReport(email_sent=email_sent, sms_sent=sms_sent)
        if not report.delivered:
            logger.warning("code_delivery_failed", account_id=account.id, purpose=purpose.value)
        return report

    def _send_email(self, account: Account, template_id: str, params: Mapping[str, Any]) -> bool:
        try:
            return bool(self.email.send_email(account.email, template_id, params))
        except Exception as exc:
            logger.error(
                "email_delivery_error",
                account_id=account.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    def _send_sms(self, account: Account, message: str) -> bool:
        try:
            return bool(self.sms.send_sms(account.phone, message))
        except Exception as exc:
            logger.error(
                "sms_delivery_error",
                account_id=account.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
