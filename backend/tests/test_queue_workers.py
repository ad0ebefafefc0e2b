import json

from bizzybee import work_queue
from bizzybee.aurinko_service import MailboxAuthError, MessagePage, RateLimitError
from bizzybee.models import Conversation, Message, PipelineJobAudit, QueueMessage, StagingMessage
from bizzybee.relay import CLASSIFY_RELAY_TASK
from bizzybee.schemas import ClassifyJob, ImportFetchJob
from bizzybee.services.queue_workers import (
    calculate_requeue_delay_s,
    drain_classify_jobs,
    drain_draft_jobs,
    drain_import_jobs,
    drain_queue,
)


class PagedMailbox:
    def __init__(self, folders):
        self.folders = folders
        self.calls = []

    def list_messages(self, folder, limit, page_token=None):
        self.calls.append((folder, limit, page_token))
        items = self.folders.get(folder, [])
        start = int(page_token or 0)
        end = start + limit
        return MessagePage(records=items[start:end], next_page_token=str(end) if end < len(items) else None)

    def close(self):
        pass


def _conversation(db, body="Could you quote for a new fence?"):
    conversation = Conversation(workspace_id="ws_1", external_conversation_id="aurinko_t1", title="Fence quote")
    db.add(conversation)
    db.commit()
    db.add(Message(conversation_id=conversation.id, external_id="m1", direction="inbound",
                   from_email="jane@example.com", body=body))
    db.commit()
    return conversation


def _outcomes(db):
    return [a.outcome for a in db.query(PipelineJobAudit).order_by(PipelineJobAudit.id).all()]


def test_requeue_delay_honours_retry_after():
    assert calculate_requeue_delay_s(1, retry_after_s=120) == 120
    assert 5 <= calculate_requeue_delay_s(1) <= 8
    assert calculate_requeue_delay_s(20) == 300


def test_classify_job_triages_and_queues_draft(db_session, deadline_factory, monkeypatch):
    from bizzybee import triage_pipeline as tp
    monkeypatch.setattr(
        tp, "_call_llm",
        lambda prompt, max_tokens=300: json.dumps({"category": "quote", "requires_reply": True, "confidence": 0.9}),
    )
    conversation = _conversation(db_session)
    work_queue.send(db_session, work_queue.CLASSIFY_QUEUE,
                    ClassifyJob(workspace_id="ws_1", conversation_id=conversation.id).model_dump())

    stats = drain_classify_jobs(db_session, deadline=deadline_factory())

    assert stats["processed"] == 1
    db_session.refresh(conversation)
    assert (conversation.category, conversation.requires_reply, conversation.triage_source) == ("quote", True, "llm")
    assert work_queue.queue_depth(db_session, work_queue.CLASSIFY_QUEUE) == 0
    assert work_queue.queue_depth(db_session, work_queue.DRAFT_QUEUE) == 1
    assert _outcomes(db_session) == ["processed"]

    drafted = drain_draft_jobs(db_session, llm=lambda prompt, **kw: "Happy to quote, Jane.", deadline=deadline_factory())
    assert drafted["processed"] == 1
    db_session.refresh(conversation)
    assert conversation.ai_draft_response == "Happy to quote, Jane."


def test_invalid_payload_is_discarded(db_session, deadline_factory):
    work_queue.send(db_session, work_queue.CLASSIFY_QUEUE, {"job_type": "CLASSIFY", "workspace_id": "ws_1"})
    work_queue.send(db_session, work_queue.CLASSIFY_QUEUE, {"job_type": "MYSTERY"})

    stats = drain_classify_jobs(db_session, deadline=deadline_factory())

    assert stats["discarded"] == 2
    assert work_queue.queue_depth(db_session, work_queue.CLASSIFY_QUEUE) == 0
    assert _outcomes(db_session) == ["discarded", "discarded"]


def test_missing_conversation_is_discarded_not_retried(db_session, deadline_factory):
    work_queue.send(db_session, work_queue.CLASSIFY_QUEUE,
                    ClassifyJob(workspace_id="ws_1", conversation_id=999).model_dump())

    stats = drain_classify_jobs(db_session, deadline=deadline_factory())

    assert stats["discarded"] == 1
    assert work_queue.queue_depth(db_session, work_queue.DEADLETTER_QUEUE) == 0


def test_failing_job_is_deadlettered_at_max_attempts(db_session, deadline_factory):
    calls = []

    def boom(db, job):
        calls.append(job.conversation_id)
        raise RuntimeError("model exploded")

    work_queue.send(db_session, work_queue.CLASSIFY_QUEUE,
                    ClassifyJob(workspace_id="ws_1", conversation_id=1).model_dump())

    results = [
        drain_queue(db_session, work_queue.CLASSIFY_QUEUE, {"CLASSIFY": boom}, vt_s=0, max_attempts=3,
                    deadline=deadline_factory())
        for _ in range(4)
    ]

    assert [r["failed"] for r in results] == [1, 1, 0, 0]
    assert results[2]["deadlettered"] == 1
    assert len(calls) == 3
    assert work_queue.queue_depth(db_session, work_queue.CLASSIFY_QUEUE) == 0
    [dead] = work_queue.read(db_session, work_queue.DEADLETTER_QUEUE, vt_s=60, n=1)
    assert dead.payload["deadlettered_attempts"] == 3
    assert "model exploded" in dead.payload["deadlettered_error"]
    assert _outcomes(db_session) == ["failed", "failed", "deadlettered"]


def test_one_drain_handles_each_message_once_even_with_zero_visibility(db_session, deadline_factory):
    calls = []

    def boom(db, job):
        calls.append(job.conversation_id)
        raise RuntimeError("model exploded")

    for conversation_id in (1, 2):
        work_queue.send(db_session, work_queue.CLASSIFY_QUEUE,
                        ClassifyJob(workspace_id="ws_1", conversation_id=conversation_id).model_dump())

    stats = drain_queue(db_session, work_queue.CLASSIFY_QUEUE, {"CLASSIFY": boom}, vt_s=0, max_attempts=3,
                        deadline=deadline_factory())

    assert stats["failed"] == 2
    assert calls == [1, 2]
    assert [m.read_ct for m in db_session.query(QueueMessage).order_by(QueueMessage.msg_id)] == [1, 1]


def test_rate_limited_job_is_hidden_without_losing_attempts(db_session, deadline_factory):
    def limited(db, job):
        raise RateLimitError(90)

    msg_id = work_queue.send(db_session, work_queue.CLASSIFY_QUEUE,
                             ClassifyJob(workspace_id="ws_1", conversation_id=1).model_dump())

    stats = drain_queue(db_session, work_queue.CLASSIFY_QUEUE, {"CLASSIFY": limited}, vt_s=0,
                        deadline=deadline_factory())

    assert stats["requeued"] == 1
    row = db_session.get(QueueMessage, msg_id)
    assert row.read_ct == 1
    assert work_queue.read(db_session, work_queue.CLASSIFY_QUEUE, vt_s=60, n=1) == []


def test_auth_failure_deadletters_immediately(db_session, provider_config, deadline_factory):
    def factory(config):
        raise MailboxAuthError()

    work_queue.send(db_session, work_queue.IMPORT_QUEUE,
                    ImportFetchJob(workspace_id="ws_1", config_id=provider_config.id).model_dump())

    stats = drain_import_jobs(db_session, client_factory=factory, deadline=deadline_factory())

    assert stats["deadlettered"] == 1
    assert work_queue.queue_depth(db_session, work_queue.DEADLETTER_QUEUE) == 1


def test_import_fetch_chain_respects_cap_then_hands_off(db_session, provider_config, dispatcher, deadline_factory):
    sent = [{"id": f"s-{i}", "from": {"address": "x@y.com"}, "textBody": "b"} for i in range(10)]
    inbox = [{"id": f"i-{i}", "from": {"address": "x@y.com"}, "textBody": "b"} for i in range(3)]
    mailbox = PagedMailbox({"SENT": sent, "INBOX": inbox})
    work_queue.send(db_session, work_queue.IMPORT_QUEUE,
                    ImportFetchJob(workspace_id="ws_1", config_id=provider_config.id, cap=4).model_dump())

    stats = drain_import_jobs(db_session, client_factory=lambda config: mailbox, dispatcher=dispatcher,
                              deadline=deadline_factory())

    assert stats["processed"] == 2
    assert [(c[0], c[1]) for c in mailbox.calls] == [("SENT", 4), ("INBOX", 4)]
    staged = db_session.query(StagingMessage).filter(StagingMessage.workspace_id == "ws_1")
    assert staged.filter(StagingMessage.direction == "outbound").count() == 4
    assert staged.filter(StagingMessage.direction == "inbound").count() == 3
    assert dispatcher.calls == [(CLASSIFY_RELAY_TASK, {"workspace_id": "ws_1"}, 0)]


def test_import_fetch_for_unknown_config_is_discarded(db_session, deadline_factory):
    work_queue.send(db_session, work_queue.IMPORT_QUEUE,
                    ImportFetchJob(workspace_id="ws_1", config_id=42).model_dump())

    stats = drain_import_jobs(db_session, client_factory=lambda c: PagedMailbox({}), deadline=deadline_factory())

    assert stats["discarded"] == 1
