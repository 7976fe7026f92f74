from __future__ import annotations

import json
import logging
import re
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal, Protocol

from .config import Settings
from .ledger_store import MerchantRecord, TargetRecord
from .vault import DECRYPTION_PLACEHOLDER, redact_email

logger = logging.getLogger(__name__)

MailKind = Literal["recovery", "protection"]

CURRENCY_SYMBOLS = {
    "gbp": "£",
    "usd": "$",
    "eur": "€",
    "cad": "C$",
    "aud": "A$",
    "jpy": "¥",
}
_EXPIRY_RE = re.compile(r"card_expiring_(\d+)_(\d+)")
_ANONYMOUS_NAMES = {"", "Unknown Customer", DECRYPTION_PLACEHOLDER}


@dataclass(frozen=True)
class MailContent:
    kind: MailKind
    recipient: str
    subject: str
    text: str


@dataclass(frozen=True)
class MailResult:
    success: bool
    dry_run: bool
    attempted_at: datetime
    message_id: str | None = None
    error_code: str | None = None
    error: str | None = None


class RecoveryMailer(Protocol):
    def send(self, target: TargetRecord, merchant: MerchantRecord, tracking_url: str) -> MailResult: ...


def format_amount(amount: int, currency: str) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency.lower(), CURRENCY_SYMBOLS["gbp"])
    return f"{symbol}{(Decimal(amount) / 100).quantize(Decimal('0.01'))}"


def _greeting(customer_name: str) -> str:
    name = customer_name.strip()
    if name in _ANONYMOUS_NAMES:
        return "there"
    return name.split()[0]


def build_mail_content(target: TargetRecord, merchant: MerchantRecord, tracking_url: str) -> MailContent:
    business = merchant.business_name or "your subscription"
    greeting = _greeting(target.customer_name)
    support = merchant.support_email or "our support team"

    if target.status == "impending":
        match = _EXPIRY_RE.search(target.failure_reason or "")
        expiry = f"{int(match.group(1)):02d}/{match.group(2)}" if match else "soon"
        return MailContent(
            kind="protection",
            recipient=target.email,
            subject=f"Keep your access: Your card for {business} expires soon",
            text=(
                f"Hi {greeting},\n\n"
                f"The card on file for your {business} subscription expires {expiry}. "
                f"Update it now to keep your access uninterrupted:\n{tracking_url}\n\n"
                f"Questions? Reach us at {support}."
            ),
        )

    amount = format_amount(target.amount, merchant.default_currency)
    return MailContent(
        kind="recovery",
        recipient=target.email,
        subject=f"Action Required: Payment failed for {business}",
        text=(
            f"Hi {greeting},\n\n"
            f"We couldn't process your payment of {amount} for {business}. "
            f"Update your payment details here to keep your subscription active:\n{tracking_url}\n\n"
            f"Questions? Reach us at {support}."
        ),
    )


def _dry_run(content: MailContent, *, reason: str) -> MailResult:
    attempted_at = datetime.now(timezone.utc)
    logger.info(
        "mailer dry run (%s) kind=%s to=%s subject=%r",
        reason,
        content.kind,
        redact_email(content.recipient),
        content.subject,
    )
    logger.debug("mailer dry run body:\n%s", content.text)
    return MailResult(
        success=True,
        dry_run=True,
        attempted_at=attempted_at,
        message_id=f"dry-run-{int(attempted_at.timestamp() * 1000)}",
    )


class StubRecoveryMailer:
    def send(self, target: TargetRecord, merchant: MerchantRecord, tracking_url: str) -> MailResult:
        return _dry_run(build_mail_content(target, merchant, tracking_url), reason="stub mailer")


class _MailSendError(Exception):
    """Internal error raised when a mail provider request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpRecoveryMailer:
    """Mailer that posts rendered messages to an HTTP email provider."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        from_address: str,
        timeout_seconds: int = 30,
    ) -> None:
        self._base_url = base_url.strip().rstrip("/")
        self._api_key = api_key.strip()
        self._from_address = from_address.strip()
        self._timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self._base_url and self._api_key)

    def send(self, target: TargetRecord, merchant: MerchantRecord, tracking_url: str) -> MailResult:
        content = build_mail_content(target, merchant, tracking_url)
        if not self.configured:
            return _dry_run(content, reason="mailer not configured")

        attempted_at = datetime.now(timezone.utc)
        masked = redact_email(content.recipient)
        if "@" not in content.recipient or content.recipient == DECRYPTION_PLACEHOLDER:
            return MailResult(
                success=False,
                dry_run=False,
                attempted_at=attempted_at,
                error_code="invalid_recipient",
                error=f"Recipient address is not deliverable (recipient: {masked})",
            )

        body: dict[str, object] = {
            "from": self._from_address,
            "to": [content.recipient],
            "subject": content.subject,
            "text": content.text,
        }
        if merchant.support_email:
            body["reply_to"] = merchant.support_email

        try:
            response_data = self._post(body)
        except _MailSendError as exc:
            return MailResult(
                success=False,
                dry_run=False,
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error=f"{exc.message} (recipient: {masked})",
            )
        message_id = response_data.get("id") or response_data.get("message_id")
        return MailResult(
            success=True,
            dry_run=False,
            attempted_at=attempted_at,
            message_id=str(message_id) if message_id is not None else None,
        )

    def _post(self, body: dict[str, object]) -> dict[str, object]:
        url = f"{self._base_url}/emails"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _MailSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _MailSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _MailSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except json.JSONDecodeError as exc:
            raise _MailSendError(
                error_code="invalid_response",
                message=f"Provider returned invalid JSON: {exc}",
            ) from exc


def create_mailer(settings: Settings) -> RecoveryMailer:
    if settings.mailer_sender_type == "http":
        return HttpRecoveryMailer(
            base_url=settings.mailer_api_base_url,
            api_key=settings.mailer_api_key,
            from_address=settings.mailer_from_address,
            timeout_seconds=settings.mailer_timeout_seconds,
        )
    return StubRecoveryMailer()
