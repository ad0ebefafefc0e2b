import hashlib
import hmac
import json

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from bizzybee import work_queue
from bizzybee.aurinko_service import TransientUpstreamError
from bizzybee.config import settings
from bizzybee.models import Conversation, Customer, Message
from bizzybee.services import webhook_ingest
from bizzybee.services.webhook_ingest import (
    WebhookEvent,
    get_or_create_conversation,
    get_or_create_customer,
    parse_webhook_payload,
    process_webhook_event,
    process_webhook_events,
    verify_signature,
)

MESSAGE = {
    "id": "msg-1",
    "threadId": "thread-9",
    "from": {"address": "Jane@Example.com", "name": "Jane Doe"},
    "subject": "Gutter repair quote",
    "textBody": "Hi, could you quote for gutter repairs?",
    "receivedAt": "2026-03-01T09:30:00Z",
}


class FakeClient:
    def __init__(self, messages=None, error=None):
        self.messages = messages or {}
        self.error = error
        self.fetched = []

    def get_message(self, message_id):
        self.fetched.append(message_id)
        if self.error:
            raise self.error
        return self.messages.get(message_id)

    def close(self):
        pass


@pytest.fixture
def mailbox(monkeypatch):
    fake = FakeClient({"msg-1": MESSAGE})
    monkeypatch.setattr(webhook_ingest, "_default_client_factory", lambda config: fake)
    return fake


def _created(message_id="msg-1", account_id="acct_1"):
    return WebhookEvent(account_id=account_id, change_type="created", message_id=message_id)


def test_parse_current_payload_format():
    events = parse_webhook_payload({
        "subscription": {"accountId": 77},
        "payloads": [
            {"changeType": "created", "resource": {"id": "m1"}},
            {"changeType": "message.updated", "id": "m2"},
            "junk",
        ],
    })
    assert [(e.account_id, e.change_type, e.message_id) for e in events] == [
        ("77", "created", "m1"),
        ("77", "updated", "m2"),
    ]


def test_parse_legacy_payload_format():
    [event] = parse_webhook_payload({
        "notification": "created",
        "accountId": "acct_1",
        "resource": "/email/messages/abc123",
    })
    assert (event.account_id, event.change_type, event.message_id) == ("acct_1", "created", "abc123")
    assert parse_webhook_payload({"resource": {"id": "x"}}) == []
    assert parse_webhook_payload(["not", "a", "dict"]) == []


def test_verify_signature():
    body = b'{"hello": "world"}'
    digest = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    assert verify_signature(body, {"x-aurinko-signature": digest}, "s3cret")
    assert verify_signature(body, {"x-webhook-signature": f"sha256={digest.upper()}"}, "s3cret")
    assert not verify_signature(body, {"x-aurinko-signature": "0" * 64}, "s3cret")
    assert not verify_signature(body, {}, "s3cret")
    assert verify_signature(body, {}, "")


def test_created_event_ingests_and_queues_triage(db_session, provider_config, mailbox):
    outcome = process_webhook_event(db_session, _created())

    assert outcome == "created"
    conversation = db_session.query(Conversation).one()
    assert conversation.external_conversation_id == "aurinko_thread-9"
    assert conversation.title == "Gutter repair quote"
    assert conversation.is_read is False
    customer = db_session.get(Customer, conversation.customer_id)
    assert (customer.email, customer.name) == ("jane@example.com", "Jane Doe")
    message = db_session.query(Message).one()
    assert message.direction == "inbound"
    assert message.body == "Hi, could you quote for gutter repairs?"
    [job] = work_queue.read(db_session, work_queue.CLASSIFY_QUEUE, vt_s=60, n=1)
    assert job.payload["conversation_id"] == conversation.id
    assert mailbox.fetched == ["msg-1"]


def test_redelivered_event_is_a_duplicate(db_session, provider_config, mailbox):
    assert process_webhook_event(db_session, _created()) == "created"
    assert process_webhook_event(db_session, _created()) == "duplicate"
    assert db_session.query(Message).count() == 1
    assert work_queue.queue_depth(db_session, work_queue.CLASSIFY_QUEUE) == 1


def test_new_message_on_known_thread_reopens_it(db_session, provider_config, monkeypatch):
    second = dict(MESSAGE, id="msg-2", textBody="Any update?")
    fake = FakeClient({"msg-1": MESSAGE, "msg-2": second})
    monkeypatch.setattr(webhook_ingest, "_default_client_factory", lambda config: fake)
    process_webhook_event(db_session, _created("msg-1"))
    conversation = db_session.query(Conversation).one()
    conversation.status = "resolved"
    db_session.commit()

    assert process_webhook_event(db_session, _created("msg-2")) == "appended"

    db_session.refresh(conversation)
    assert conversation.status == "open"
    assert db_session.query(Message).count() == 2


def test_redelivery_does_not_reopen_a_resolved_thread(db_session, provider_config, mailbox):
    process_webhook_event(db_session, _created())
    conversation = db_session.query(Conversation).one()
    conversation.status = "resolved"
    db_session.commit()

    assert process_webhook_event(db_session, _created()) == "duplicate"

    db_session.refresh(conversation)
    assert conversation.status == "resolved"
    assert db_session.query(Message).count() == 1


def test_redelivery_with_a_different_thread_id_is_a_duplicate(db_session, provider_config, monkeypatch):
    inline = {k: v for k, v in MESSAGE.items() if k != "threadId"}
    down = FakeClient(error=TransientUpstreamError("503"))
    monkeypatch.setattr(webhook_ingest, "_default_client_factory", lambda config: down)
    first = WebhookEvent(account_id="acct_1", change_type="created", message_id="msg-1", resource=inline)
    assert process_webhook_event(db_session, first) == "created"
    assert db_session.query(Conversation).one().external_conversation_id == "aurinko_msg-1"

    # the API is back and now reports the real thread
    up = FakeClient({"msg-1": MESSAGE})
    monkeypatch.setattr(webhook_ingest, "_default_client_factory", lambda config: up)
    assert process_webhook_event(db_session, _created()) == "duplicate"

    assert db_session.query(Message).count() == 1
    assert db_session.query(Conversation).count() == 1


@pytest.fixture
def rival_session(db_urls):
    """Second connection to the same DB, standing in for a concurrent webhook delivery."""
    engine = create_engine(db_urls[0], connect_args={"check_same_thread": False})
    session = sessionmaker(bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


def _insert_before_next_commit(db, rival, row):
    @event.listens_for(db, "before_commit", once=True)
    def _race(session):
        rival.add(row)
        rival.commit()


def test_customer_insert_race_refetches_the_winner(db_session, rival_session):
    winner = Customer(workspace_id="ws_1", email="jane@example.com", name="Jane")
    _insert_before_next_commit(db_session, rival_session, winner)

    customer = get_or_create_customer(db_session, "ws_1", "Jane@Example.com", "Jane Doe")

    assert customer.id == winner.id
    assert customer.name == "Jane"
    assert db_session.query(Customer).count() == 1


def test_conversation_insert_race_refetches_the_winner(db_session, rival_session):
    customer = get_or_create_customer(db_session, "ws_1", "jane@example.com", "Jane")
    winner = Conversation(
        workspace_id="ws_1",
        customer_id=customer.id,
        external_conversation_id="aurinko_thread-9",
        channel="email",
        status="new",
    )
    _insert_before_next_commit(db_session, rival_session, winner)

    conversation, created = get_or_create_conversation(
        db_session, "ws_1", "aurinko_thread-9", customer, "Gutter repair quote"
    )

    assert created is False
    assert conversation.id == winner.id
    assert db_session.query(Conversation).count() == 1


def test_owner_and_alias_mail_is_skipped(db_session, provider_config, monkeypatch):
    fake = FakeClient({
        "own": dict(MESSAGE, id="own", **{"from": {"address": "Owner@Bizzy.example"}}),
        "alias": dict(MESSAGE, id="alias", **{"from": {"address": "hello@bizzy.example"}}),
    })
    monkeypatch.setattr(webhook_ingest, "_default_client_factory", lambda config: fake)

    assert process_webhook_event(db_session, _created("own")) == "outbound_skipped"
    assert process_webhook_event(db_session, _created("alias")) == "outbound_skipped"
    assert db_session.query(Conversation).count() == 0


def test_failed_fetch_falls_back_to_inline_resource(db_session, provider_config, monkeypatch):
    fake = FakeClient(error=TransientUpstreamError("503"))
    monkeypatch.setattr(webhook_ingest, "_default_client_factory", lambda config: fake)
    event = WebhookEvent(account_id="acct_1", change_type="created", message_id="msg-1", resource=dict(MESSAGE))

    assert process_webhook_event(db_session, event) == "created"
    assert db_session.query(Message).one().external_id == "msg-1"


def test_unknown_account_is_ignored(db_session, provider_config, mailbox):
    assert process_webhook_event(db_session, _created(account_id="acct_404")) == "unknown_account"
    assert mailbox.fetched == []


def test_read_update_resolves_and_unread_reopens(db_session, provider_config, mailbox):
    process_webhook_event(db_session, _created())
    read = WebhookEvent(account_id="acct_1", change_type="updated", message_id="msg-1",
                        resource={"id": "msg-1", "threadId": "thread-9", "isRead": True})

    assert process_webhook_event(db_session, read) == "resolved"
    conversation = db_session.query(Conversation).one()
    assert (conversation.status, conversation.is_read) == ("resolved", True)
    assert conversation.resolved_at is not None

    unread = WebhookEvent(account_id="acct_1", change_type="updated", message_id="msg-1",
                          resource={"id": "msg-1", "sysLabels": ["unread", "inbox"]})
    assert process_webhook_event(db_session, unread) == "reopened"
    db_session.refresh(conversation)
    assert conversation.status == "open"
    assert conversation.resolved_at is None


def test_one_failing_event_does_not_drop_the_rest(db_session, provider_config, mailbox):
    def flaky_send(db, queue, payload):
        raise RuntimeError("queue down")

    events = [_created(), WebhookEvent(account_id="acct_1", change_type="deleted", message_id="m9")]
    outcomes = process_webhook_events(db_session, events, queue_send=flaky_send)

    # enqueue failure is logged; the message itself is stored
    assert outcomes == {"created": 1, "ignored": 1}
    assert db_session.query(Message).count() == 1


# =============================================================================
# HTTP surface
# =============================================================================

def test_validation_token_is_echoed(client):
    res = client.get("/api/aurinko-webhook", params={"validationToken": "abc123"})
    assert res.status_code == 200
    assert res.text == "abc123"
    assert res.headers["content-type"].startswith("text/plain")

    res = client.post("/api/aurinko-webhook?challenge=xyz")
    assert res.text == "xyz"


def test_known_and_unknown_accounts_get_the_same_response(client, db_session, provider_config, mailbox):
    known = {"subscription": {"accountId": "acct_1"}, "payloads": [{"changeType": "created", "id": "msg-1"}]}
    unknown = {"subscription": {"accountId": "acct_404"}, "payloads": [{"changeType": "created", "id": "msg-1"}]}

    res_known = client.post("/api/aurinko-webhook", json=known)
    res_unknown = client.post("/api/aurinko-webhook", json=unknown)

    assert res_known.status_code == res_unknown.status_code == 200
    assert res_known.json() == res_unknown.json() == {"success": True}
    # background ingest ran for the known account only
    assert db_session.query(Conversation).count() == 1


def test_bad_signature_is_acknowledged_but_not_processed(client, db_session, provider_config, mailbox, monkeypatch):
    monkeypatch.setattr(settings, "aurinko_webhook_secret", "s3cret")
    body = json.dumps({"subscription": {"accountId": "acct_1"}, "payloads": [{"changeType": "created", "id": "msg-1"}]})

    res = client.post("/api/aurinko-webhook", content=body, headers={"x-aurinko-signature": "deadbeef"})

    assert res.json() == {"success": True}
    assert db_session.query(Conversation).count() == 0

    digest = hmac.new(b"s3cret", body.encode(), hashlib.sha256).hexdigest()
    res = client.post("/api/aurinko-webhook", content=body, headers={"x-aurinko-signature": digest})
    assert res.json() == {"success": True}
    assert db_session.query(Conversation).count() == 1


def test_oversized_payload_is_rejected(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_max_payload_bytes", 100)
    res = client.post("/api/aurinko-webhook", content=b"{" + b" " * 200 + b"}")
    assert res.status_code == 413


def test_rate_limited_sender_gets_429(client, monkeypatch):
    from bizzybee.routers import webhook
    monkeypatch.setattr(webhook, "check_rate_limit", lambda key, limit: False)
    res = client.post("/api/aurinko-webhook", json={})
    assert res.status_code == 429


def test_garbage_body_is_acknowledged(client):
    res = client.post("/api/aurinko-webhook", content=b"not json")
    assert res.json() == {"success": True}
