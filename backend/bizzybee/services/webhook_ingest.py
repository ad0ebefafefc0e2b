"""
Aurinko webhook ingest: signature verification, payload parsing, and
race-safe customer/conversation/message upserts for real-time mail.

Two notifications for the same thread can arrive concurrently; every insert
that can collide on a unique key is retried as a re-fetch on IntegrityError.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import work_queue
from ..aurinko_service import AurinkoClient, MailboxError, message_body_text, parse_received_at, sender_address
from ..config import settings
from ..models import Conversation, Customer, EmailProviderConfig, Message, utcnow
from ..schemas import ClassifyJob

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-aurinko-signature", "x-webhook-signature")


def verify_signature(raw_body: bytes, headers: Mapping[str, str], secret: Optional[str]) -> bool:
    """HMAC-SHA256 hex of the raw body, compared in constant time. No secret configured -> accept."""
    if not secret:
        logger.warning("AURINKO_WEBHOOK_SECRET not set; skipping webhook signature verification")
        return True
    provided = None
    for name in SIGNATURE_HEADERS:
        if headers.get(name):
            provided = headers.get(name)
            break
    if not provided:
        return False
    provided = provided.strip().lower()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided)


@dataclass
class WebhookEvent:
    account_id: str
    change_type: str  # created | updated | deleted
    message_id: Optional[str] = None
    resource: dict = field(default_factory=dict)


def _change_type(value) -> str:
    text = str(value or "").strip().lower()
    return text.split(".")[-1] if text else ""


def _event(account_id, change, resource) -> Optional[WebhookEvent]:
    if not account_id:
        return None
    if isinstance(resource, str):
        # "/email/messages/<id>" style reference
        message_id = resource.rstrip("/").split("/")[-1] or None
        resource = {}
    elif isinstance(resource, dict):
        message_id = resource.get("id") or resource.get("messageId")
    else:
        message_id, resource = None, {}
    return WebhookEvent(
        account_id=str(account_id),
        change_type=_change_type(change),
        message_id=str(message_id) if message_id else None,
        resource=resource,
    )


def parse_webhook_payload(data) -> list[WebhookEvent]:
    """Current `{payloads: [...], subscription}` format and legacy `{notification, resource, accountId}`."""
    if not isinstance(data, dict):
        return []
    events = []
    if isinstance(data.get("payloads"), list):
        subscription = data.get("subscription") or {}
        account_id = subscription.get("accountId") or data.get("accountId")
        for payload in data["payloads"]:
            if not isinstance(payload, dict):
                continue
            resource = payload.get("resource") or payload.get("data") or {}
            if not resource and payload.get("id"):
                resource = {"id": payload.get("id")}
            ev = _event(payload.get("accountId") or account_id, payload.get("changeType"), resource)
            if ev:
                events.append(ev)
    elif data.get("notification") or data.get("resource"):
        ev = _event(data.get("accountId"), data.get("notification") or data.get("changeType") or "created",
                    data.get("resource") or {})
        if ev:
            events.append(ev)
    return events


# =============================================================================
# Upserts
# =============================================================================

def get_or_create_customer(db: Session, workspace_id: str, email: str, name: Optional[str]) -> Customer:
    email = email.strip().lower()
    customer = db.query(Customer).filter(Customer.workspace_id == workspace_id, Customer.email == email).first()
    if customer is not None:
        if name and not customer.name:
            customer.name = name
            db.commit()
        return customer
    customer = Customer(workspace_id=workspace_id, email=email, name=name or None)
    db.add(customer)
    try:
        db.commit()
        return customer
    except IntegrityError:
        db.rollback()
        return db.query(Customer).filter(Customer.workspace_id == workspace_id, Customer.email == email).one()


def get_or_create_conversation(
    db: Session,
    workspace_id: str,
    external_id: str,
    customer: Customer,
    title: Optional[str],
) -> tuple[Conversation, bool]:
    """(conversation, created). Existing threads are returned untouched; the caller reopens them once a new message is stored."""
    def _fetch():
        return (
            db.query(Conversation)
            .filter(Conversation.workspace_id == workspace_id, Conversation.external_conversation_id == external_id)
            .first()
        )

    conversation = _fetch()
    if conversation is None:
        conversation = Conversation(
            workspace_id=workspace_id,
            customer_id=customer.id,
            external_conversation_id=external_id,
            channel="email",
            title=(title or "")[:500] or None,
            status="new",
        )
        db.add(conversation)
        try:
            db.commit()
            return conversation, True
        except IntegrityError:
            db.rollback()
            conversation = _fetch()
    return conversation, False


def message_already_ingested(db: Session, workspace_id: str, external_id: str) -> bool:
    return (
        db.query(Message.id)
        .join(Conversation, Conversation.id == Message.conversation_id)
        .filter(Conversation.workspace_id == workspace_id, Message.external_id == external_id)
        .first()
        is not None
    )


def _owner_addresses(config: EmailProviderConfig) -> set[str]:
    addresses = {(config.email_address or "").strip().lower()}
    for alias in config.aliases or []:
        if isinstance(alias, str) and alias.strip():
            addresses.add(alias.strip().lower())
    addresses.discard("")
    return addresses


def _read_flag(resource: dict) -> Optional[bool]:
    if "isRead" in resource:
        return bool(resource["isRead"])
    if "unread" in resource:
        return not bool(resource["unread"])
    labels = resource.get("sysLabels")
    if isinstance(labels, list):
        return "unread" not in [str(x).lower() for x in labels]
    return None


def _default_client_factory(config: EmailProviderConfig) -> AurinkoClient:
    return AurinkoClient(config.access_token)


def _fetch_full_message(event: WebhookEvent, config: EmailProviderConfig, client_factory: Callable) -> dict:
    """Full message from the API; the inline resource when the fetch fails."""
    if not event.message_id or not config.access_token:
        return event.resource
    try:
        client = client_factory(config)
        try:
            return client.get_message(event.message_id) or event.resource
        finally:
            client.close()
    except MailboxError as e:
        logger.warning(f"Could not fetch message {event.message_id} for account {event.account_id}: {e}")
        return event.resource


def _ingest_created(
    db: Session,
    event: WebhookEvent,
    config: EmailProviderConfig,
    client_factory: Callable,
    queue_send: Callable,
) -> str:
    message = _fetch_full_message(event, config, client_factory)
    external_id = str(message.get("id") or event.message_id or "")
    if not external_id:
        return "ignored"
    from_email, from_name = sender_address(message)
    if not from_email:
        return "ignored"
    if from_email in _owner_addresses(config):
        return "outbound_skipped"

    workspace_id = config.workspace_id
    # thread ids can differ between deliveries (inline resource vs API fetch)
    if message_already_ingested(db, workspace_id, external_id):
        logger.info(f"Message {external_id} already ingested; skipping")
        return "duplicate"
    customer = get_or_create_customer(db, workspace_id, from_email, from_name)
    thread_id = message.get("threadId") or external_id
    conversation, created = get_or_create_conversation(
        db, workspace_id, f"aurinko_{thread_id}", customer, message.get("subject")
    )

    db.add(Message(
        conversation_id=conversation.id,
        external_id=external_id,
        direction="inbound",
        actor_type="customer",
        from_email=from_email,
        from_name=from_name or None,
        body=message_body_text(message)[: settings.webhook_body_max_chars],
    ))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Message {external_id} already ingested; skipping")
        return "duplicate"

    conversation.last_message_at = parse_received_at(message.get("receivedAt")) or utcnow()
    conversation.is_read = False
    if not created and conversation.status == "resolved":
        conversation.status = "open"
        conversation.resolved_at = None
    db.commit()

    try:
        queue_send(db, work_queue.CLASSIFY_QUEUE, ClassifyJob(
            workspace_id=workspace_id, conversation_id=conversation.id
        ).model_dump())
    except Exception as e:
        # message is stored; triage can be re-run manually
        logger.error(f"Failed to enqueue triage for conversation {conversation.id}: {e}")
    return "created" if created else "appended"


def _apply_updated(
    db: Session,
    event: WebhookEvent,
    config: EmailProviderConfig,
    client_factory: Callable,
) -> str:
    resource = event.resource
    is_read = _read_flag(resource)
    if is_read is None:
        resource = _fetch_full_message(event, config, client_factory)
        is_read = _read_flag(resource)
    if is_read is None:
        return "ignored"

    conversation = None
    thread_id = resource.get("threadId")
    if thread_id:
        conversation = (
            db.query(Conversation)
            .filter(
                Conversation.workspace_id == config.workspace_id,
                Conversation.external_conversation_id == f"aurinko_{thread_id}",
            )
            .first()
        )
    if conversation is None and event.message_id:
        conversation = (
            db.query(Conversation)
            .join(Message, Message.conversation_id == Conversation.id)
            .filter(Conversation.workspace_id == config.workspace_id, Message.external_id == event.message_id)
            .first()
        )
    if conversation is None:
        return "ignored"

    conversation.is_read = is_read
    if is_read and conversation.status != "resolved":
        conversation.status = "resolved"
        conversation.resolved_at = utcnow()
    elif not is_read and conversation.status == "resolved":
        conversation.status = "open"
        conversation.resolved_at = None
    db.commit()
    return "resolved" if is_read else "reopened"


def process_webhook_event(
    db: Session,
    event: WebhookEvent,
    client_factory: Optional[Callable] = None,
    queue_send: Optional[Callable] = None,
) -> str:
    client_factory = client_factory or _default_client_factory
    queue_send = queue_send or work_queue.send
    config = db.query(EmailProviderConfig).filter(EmailProviderConfig.account_id == event.account_id).first()
    if config is None:
        logger.info(f"Webhook for unknown account {event.account_id}; ignoring")
        return "unknown_account"
    if event.change_type == "created":
        return _ingest_created(db, event, config, client_factory, queue_send)
    if event.change_type == "updated":
        return _apply_updated(db, event, config, client_factory)
    return "ignored"


def process_webhook_events(
    db: Session,
    events: list[WebhookEvent],
    client_factory: Optional[Callable] = None,
    queue_send: Optional[Callable] = None,
) -> dict:
    """Process each notification independently; one failure does not drop the rest."""
    outcomes: dict[str, int] = {}
    for event in events:
        try:
            outcome = process_webhook_event(db, event, client_factory, queue_send)
        except Exception:
            db.rollback()
            logger.exception(f"Webhook event for account {event.account_id} failed")
            outcome = "failed"
        outcomes[outcome] = outcomes.get(outcome, 0) + 1
    return outcomes
