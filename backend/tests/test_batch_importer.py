import pytest

from bizzybee.aurinko_service import MailboxAuthError, MessagePage, RateLimitError, TransientUpstreamError
from bizzybee.import_job_db import cancel_import_job, create_import_job, get_import_progress
from bizzybee.models import ImportJob, StagingMessage
from bizzybee.relay import CLASSIFY_RELAY_TASK, IMPORT_RELAY_TASK
from bizzybee.services.batch_importer import run_import_batch, upsert_staging_rows
from bizzybee.worker_lock import acquire_lock


def _messages(prefix: str, n: int) -> list[dict]:
    return [
        {
            "id": f"{prefix}-{i}",
            "threadId": f"t-{prefix}-{i}",
            "from": {"address": f"sender{i}@example.com"},
            "subject": f"{prefix} {i}",
            "textBody": f"body {i}",
        }
        for i in range(n)
    ]


class FakeMailbox:
    """Offset-paginated folders; page tokens are stringified offsets."""

    def __init__(self, folders: dict, on_call=None, errors=None):
        self.folders = folders
        self.on_call = on_call
        self.errors = list(errors or [])
        self.calls = []

    def list_messages(self, folder, limit, page_token=None):
        self.calls.append((folder, limit, page_token))
        if self.on_call:
            self.on_call()
        if self.errors:
            raise self.errors.pop(0)
        items = self.folders.get(folder, [])
        start = int(page_token or 0)
        end = start + limit
        next_token = str(end) if end < len(items) else None
        return MessagePage(records=items[start:end], next_page_token=next_token)

    def close(self):
        pass


def _staged(db, direction=None) -> int:
    q = db.query(StagingMessage).filter(StagingMessage.workspace_id == "ws_1")
    if direction:
        q = q.filter(StagingMessage.direction == direction)
    return q.count()


def test_upsert_is_idempotent(db_session):
    rows = [
        {"workspace_id": "ws_1", "external_id": "m1", "direction": "inbound", "status": "scanned"},
        {"workspace_id": "ws_1", "external_id": "m2", "direction": "inbound", "status": "scanned"},
    ]
    assert upsert_staging_rows(db_session, rows) == 2
    assert upsert_staging_rows(db_session, rows) == 0
    assert _staged(db_session) == 2


def test_single_hop_import_completes_and_hands_off_to_classifier(
    db_session, provider_config, dispatcher, deadline_factory
):
    mailbox = FakeMailbox({"SENT": _messages("s", 30), "INBOX": _messages("i", 80)})

    result = run_import_batch(
        db_session, "ws_1", client=mailbox, dispatcher=dispatcher, deadline=deadline_factory()
    )

    assert result["status"] == "completed"
    # last_100 -> 50 per folder; SENT only has 30
    assert (result["sent_imported"], result["inbox_imported"]) == (30, 50)
    assert _staged(db_session, "outbound") == 30
    assert _staged(db_session, "inbound") == 50
    job = db_session.get(ImportJob, result["job_id"])
    assert job.status == "completed"
    assert job.total_target == 100
    assert dispatcher.calls == [(CLASSIFY_RELAY_TASK, {"workspace_id": "ws_1"}, 0)]
    assert get_import_progress(db_session, "ws_1").current_phase == "classifying"


def test_folder_share_caps_sent_before_switching(db_session, provider_config, dispatcher, deadline_factory):
    mailbox = FakeMailbox({"SENT": _messages("s", 500), "INBOX": _messages("i", 500)})

    result = run_import_batch(
        db_session, "ws_1", client=mailbox, dispatcher=dispatcher, deadline=deadline_factory()
    )

    assert result["status"] == "completed"
    assert _staged(db_session, "outbound") == 50
    assert _staged(db_session, "inbound") == 50
    folders = [c[0] for c in mailbox.calls]
    assert folders == sorted(folders, key=lambda f: f != "SENT")  # every SENT call precedes INBOX


def test_empty_inbox_completes_after_first_page(db_session, provider_config, dispatcher, deadline_factory):
    mailbox = FakeMailbox({"SENT": _messages("s", 10), "INBOX": []})

    result = run_import_batch(
        db_session, "ws_1", client=mailbox, dispatcher=dispatcher, deadline=deadline_factory()
    )

    assert result["status"] == "completed"
    assert [c[0] for c in mailbox.calls] == ["SENT", "INBOX"]
    assert dispatcher.last[0] == CLASSIFY_RELAY_TASK


def test_relay_resumes_from_checkpoint(db_session, provider_config, dispatcher, clock, deadline_factory, monkeypatch):
    from bizzybee.config import settings
    monkeypatch.setattr(settings, "import_batch_size", 20)
    # every page eats almost the whole budget: exactly one page per hop
    mailbox = FakeMailbox(
        {"SENT": _messages("s", 45), "INBOX": _messages("i", 45)},
        on_call=lambda: clock.advance(49),
    )

    first = run_import_batch(db_session, "ws_1", client=mailbox, dispatcher=dispatcher, deadline=deadline_factory())
    assert first["status"] == "continuing"
    task, kwargs, countdown = dispatcher.last
    assert task == IMPORT_RELAY_TASK
    assert kwargs == {"workspace_id": "ws_1", "job_id": first["job_id"], "last_progress": 20, "stalled_relays": 0}
    assert countdown == 0
    assert db_session.get(ImportJob, first["job_id"]).sent_page_token == "20"

    hops = 1
    result = first
    while result["status"] == "continuing" and hops < 20:
        _, kwargs, _ = dispatcher.last
        result = run_import_batch(db_session, client=mailbox, dispatcher=dispatcher, deadline=deadline_factory(), **kwargs)
        hops += 1

    assert result["status"] == "completed"
    assert _staged(db_session, "outbound") == 45
    assert _staged(db_session, "inbound") == 45
    # each page was requested exactly once: no rewinds across hops
    assert [c[2] for c in mailbox.calls if c[0] == "SENT"] == [None, "20", "40"]
    assert [c[2] for c in mailbox.calls if c[0] == "INBOX"] == [None, "20", "40"]


def test_crash_after_upsert_loses_nothing(db_session, provider_config, dispatcher, deadline_factory):
    """Rows already in staging (e.g. from a hop that died before checkpointing) are counted, not duplicated."""
    job = create_import_job(db_session, "ws_1", provider_config.id, "last_100")
    upsert_staging_rows(db_session, [
        {"workspace_id": "ws_1", "external_id": m["id"], "direction": "outbound", "status": "scanned"}
        for m in _messages("s", 10)
    ])
    mailbox = FakeMailbox({"SENT": _messages("s", 10), "INBOX": _messages("i", 5)})

    result = run_import_batch(
        db_session, "ws_1", job_id=job.id, client=mailbox, dispatcher=dispatcher, deadline=deadline_factory()
    )

    assert result["status"] == "completed"
    assert _staged(db_session, "outbound") == 10
    assert db_session.get(ImportJob, job.id).sent_imported == 10


def test_stalled_relays_end_in_error(db_session, provider_config, dispatcher, deadline_factory):
    mailbox = FakeMailbox({"SENT": _messages("s", 10)}, errors=[RateLimitError(100)] * 50)

    result = run_import_batch(db_session, "ws_1", client=mailbox, dispatcher=dispatcher, deadline=deadline_factory())
    assert result["status"] == "continuing"
    assert result["sleep_ms"] == 100_000
    assert dispatcher.last[2] == 100

    hops = 1
    while result["status"] == "continuing" and hops < 30:
        _, kwargs, _ = dispatcher.last
        result = run_import_batch(db_session, client=mailbox, dispatcher=dispatcher, deadline=deadline_factory(), **kwargs)
        hops += 1

    assert result["status"] == "error"
    assert hops == 11
    job = db_session.get(ImportJob, result["job_id"])
    assert job.status == "error"
    assert "stalled" in job.error_message
    assert job.retry_count == 10


def test_short_rate_limit_waits_in_process(db_session, provider_config, dispatcher, deadline_factory):
    slept = []
    mailbox = FakeMailbox({"SENT": _messages("s", 3), "INBOX": []}, errors=[RateLimitError(5)])

    result = run_import_batch(
        db_session, "ws_1", client=mailbox, dispatcher=dispatcher,
        deadline=deadline_factory(), sleep=slept.append,
    )

    assert result["status"] == "completed"
    assert slept == [5]


def test_transient_errors_exhaust_retries_then_relay(db_session, provider_config, dispatcher, deadline_factory):
    slept = []
    mailbox = FakeMailbox({"SENT": _messages("s", 3)}, errors=[TransientUpstreamError("502")] * 3)

    result = run_import_batch(
        db_session, "ws_1", client=mailbox, dispatcher=dispatcher,
        deadline=deadline_factory(), sleep=slept.append,
    )

    assert result["status"] == "continuing"
    assert len(slept) == 2
    assert dispatcher.last[0] == IMPORT_RELAY_TASK
    assert dispatcher.last[2] > 0


def test_auth_error_fails_job_without_relay(db_session, provider_config, dispatcher, deadline_factory):
    mailbox = FakeMailbox({}, errors=[MailboxAuthError()])

    result = run_import_batch(db_session, "ws_1", client=mailbox, dispatcher=dispatcher, deadline=deadline_factory())

    assert result["status"] == "error"
    assert "reconnect" in result["error"].lower()
    assert dispatcher.calls == []
    progress = get_import_progress(db_session, "ws_1")
    assert progress.current_phase == "error"
    assert "reconnect" in progress.last_error.lower()


def test_cancelled_job_short_circuits(db_session, provider_config, dispatcher, deadline_factory):
    job = create_import_job(db_session, "ws_1", provider_config.id, "last_100")
    cancel_import_job(db_session, job.id)
    mailbox = FakeMailbox({"SENT": _messages("s", 10)})

    result = run_import_batch(
        db_session, "ws_1", job_id=job.id, client=mailbox, dispatcher=dispatcher, deadline=deadline_factory()
    )

    assert result["status"] == "cancelled"
    assert mailbox.calls == []
    assert dispatcher.calls == []


def test_concurrent_hop_is_skipped(db_session, provider_config, dispatcher, deadline_factory):
    acquire_lock(db_session, "ws_1", "email-import", "someone-else")
    mailbox = FakeMailbox({"SENT": _messages("s", 10)})

    result = run_import_batch(db_session, "ws_1", client=mailbox, dispatcher=dispatcher, deadline=deadline_factory())

    assert result["status"] == "skipped"
    assert mailbox.calls == []


def test_missing_provider_config_is_an_error(db_session, dispatcher, deadline_factory):
    result = run_import_batch(db_session, "ws_1", client=FakeMailbox({}), dispatcher=dispatcher,
                              deadline=deadline_factory())
    assert result["status"] == "error"
    assert get_import_progress(db_session, "ws_1").current_phase == "error"


@pytest.mark.parametrize("mode,target", [("last_100", 100), ("last_1000", 1000), ("full", 30000)])
def test_total_target_by_mode(db_session, provider_config, mode, target):
    job = create_import_job(db_session, "ws_1", provider_config.id, mode)
    assert job.total_target == target
