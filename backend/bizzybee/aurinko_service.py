"""Aurinko mailbox API: paginated message listing, single-message fetch, error mapping, normalization."""
import html
import logging
import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parseaddr, parsedate_to_datetime
from typing import Optional

import httpx

from .config import settings

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_WAIT_S = 30.0
RECONNECT_MESSAGE = "Email access token expired. Please reconnect your email account."


class MailboxError(Exception):
    """Base class for mailbox provider failures."""
    pass


class MailboxAuthError(MailboxError):
    """401 from the provider. Not retryable; the user has to reconnect."""

    def __init__(self, message: str = RECONNECT_MESSAGE):
        super().__init__(message)


class RateLimitError(MailboxError):
    """429 from the provider; retry_after_s comes from the Retry-After header."""

    def __init__(self, retry_after_s: float = DEFAULT_RATE_LIMIT_WAIT_S):
        super().__init__(f"Rate limited by mailbox provider (retry after {retry_after_s:.0f}s)")
        self.retry_after_s = retry_after_s


class TransientUpstreamError(MailboxError):
    """5xx or transport failure; retry with backoff."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MailboxApiError(MailboxError):
    """Any other non-2xx response. Not retryable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def calculate_backoff_s(attempt: int, base_s: Optional[float] = None, max_s: Optional[float] = None) -> float:
    """Exponential backoff (attempt is 0-based) plus up to 1s of jitter, capped."""
    base = settings.import_backoff_base_s if base_s is None else base_s
    cap = settings.import_backoff_max_s if max_s is None else max_s
    return min(cap, base * (2 ** max(0, attempt)) + random.uniform(0, 1.0))


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Retry-After is either delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


@dataclass
class MessagePage:
    records: list = field(default_factory=list)
    next_page_token: Optional[str] = None


class AurinkoClient:
    """Thin sync client over the Aurinko email API. One instance per access token."""

    def __init__(
        self,
        access_token: str,
        base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        http: Optional[httpx.Client] = None,
    ):
        if not access_token:
            raise MailboxAuthError()
        self.base_url = (base_url or settings.aurinko_api_base_url).rstrip("/")
        self._http = http or httpx.Client(timeout=timeout_s or settings.aurinko_timeout_s)
        self._owns_http = http is None
        self._headers = {"Authorization": f"Bearer {access_token}"}

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _get(self, path: str, params: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = self._http.get(url, params=params, headers=self._headers)
        except httpx.TransportError as e:
            raise TransientUpstreamError(f"Mailbox request failed: {e}") from e

        status = resp.status_code
        if status == 401:
            raise MailboxAuthError()
        if status == 429:
            wait = parse_retry_after(resp.headers.get("retry-after"))
            raise RateLimitError(DEFAULT_RATE_LIMIT_WAIT_S if wait is None else wait)
        if status >= 500:
            raise TransientUpstreamError(f"Mailbox provider error {status}", status_code=status)
        if status >= 400:
            raise MailboxApiError(f"Mailbox API error {status}: {resp.text[:200]}", status_code=status)
        try:
            return resp.json()
        except ValueError as e:
            raise TransientUpstreamError(f"Mailbox returned invalid JSON ({status})", status_code=status) from e

    def list_messages(self, folder: str, limit: int, page_token: Optional[str] = None) -> MessagePage:
        """One page of messages in a folder (SENT | INBOX), newest first."""
        params = {"folder": folder, "limit": max(1, int(limit))}
        if page_token:
            params["pageToken"] = page_token
        data = self._get("/v1/email/messages", params=params)
        records = data.get("records") or data.get("messages") or data.get("items") or data.get("data") or []
        return MessagePage(records=list(records), next_page_token=data.get("nextPageToken") or None)

    def get_message(self, message_id: str) -> dict:
        data = self._get(f"/v1/email/messages/{message_id}", params={"bodyType": "full"})
        return data.get("message") or data


# =============================================================================
# Normalization
# =============================================================================

def _address(value) -> tuple[str, str]:
    """(email_lowercase, name) from {"address"|"email", "name"} or 'Name <a@b>'."""
    if isinstance(value, dict):
        email = value.get("address") or value.get("email") or ""
        return email.strip().lower(), (value.get("name") or "").strip()
    if isinstance(value, str):
        name, email = parseaddr(value)
        return email.strip().lower(), name.strip()
    return "", ""


def sender_address(message: dict) -> tuple[str, str]:
    return _address(message.get("from") or message.get("sender"))


def recipient_addresses(message: dict) -> list[str]:
    out = []
    for item in message.get("to") or []:
        email, _ = _address(item)
        if email:
            out.append(email)
    return out


def html_to_text(raw_html: str) -> str:
    text = re.sub(r"(?is)<(script|style).*?</\1>", " ", raw_html or "")
    text = re.sub(r"<[^>]+>", " ", text)
    text = html.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def message_body_text(message: dict) -> str:
    """Plain text body, else stripped HTML, else the provider snippet."""
    text = message.get("textBody") or message.get("body") or ""
    if isinstance(text, str) and text.strip():
        return text.strip()
    html_body = message.get("htmlBody") or ""
    if html_body:
        return html_to_text(html_body)
    return (message.get("bodySnippet") or message.get("snippet") or "").strip()


def parse_received_at(value) -> Optional[datetime]:
    """ISO-8601 (with or without Z) -> naive UTC."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        try:
            dt = parsedate_to_datetime(str(value))
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def message_to_staging_row(
    message: dict,
    workspace_id: str,
    config_id: Optional[int],
    job_id: Optional[str],
    folder: str,
) -> Optional[dict]:
    """Staging row dict for `email_import_queue`, or None when the record has no id."""
    external_id = str(message.get("id") or "").strip()
    if not external_id:
        return None
    from_email, from_name = sender_address(message)
    body = message_body_text(message)
    return {
        "workspace_id": workspace_id,
        "config_id": config_id,
        "job_id": job_id,
        "external_id": external_id,
        "thread_id": message.get("threadId"),
        "direction": "outbound" if folder == "SENT" else "inbound",
        "from_email": from_email or None,
        "from_name": from_name or None,
        "to_emails": recipient_addresses(message),
        "subject": (message.get("subject") or "")[:1000],
        "body": body,
        "body_html": message.get("htmlBody"),
        "has_body": bool(body),
        "received_at": parse_received_at(message.get("receivedAt") or message.get("sentAt")),
        "status": "scanned",
    }
