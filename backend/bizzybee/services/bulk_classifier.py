"""
Bulk classifier: drains unclassified staging rows in relay hops.

Sender rules answer known senders without a model call; everything else goes
to one LLM call per chunk with one compact line per email. Unparseable or
partial model output degrades to "unknown" + needs_review rather than
aborting the run.
"""
import logging
import uuid
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..config import settings
from ..import_job_db import update_import_progress
from ..llm_client import call_llm, extract_json_array
from ..models import StagingMessage, utcnow
from ..relay import CLASSIFY_RELAY_TASK, LEARN_VOICE_TASK, Deadline, default_dispatcher
from ..sender_rules import load_sender_rules, match_sender_rule
from ..worker_lock import acquire_lock, release_lock, renew_lock
from .classification_service import EMAIL_CATEGORIES, apply_triage_policy, unknown_verdict

logger = logging.getLogger(__name__)

FUNCTION_NAME = "email-classify-bulk"

SYSTEM_PROMPT = "You classify small-business emails. Reply with JSON only."


def _clean(text: Optional[str], max_len: int) -> str:
    text = (text or "").replace("\r", " ").replace("\n", " ").replace("|", "/")
    return " ".join(text.split())[:max_len]


def email_line(index: int, row: StagingMessage) -> str:
    """index|direction|from|subject|snippet"""
    direction = "OUT" if row.direction == "outbound" else "IN"
    return "|".join([
        str(index),
        direction,
        _clean(row.from_email, 80),
        _clean(row.subject, 100),
        _clean(row.body, 150),
    ])


def build_classification_prompt(rows: list) -> str:
    categories = "\n".join(f"- {name}: {desc}" for name, desc in EMAIL_CATEGORIES.items())
    lines = "\n".join(email_line(i, row) for i, row in enumerate(rows))
    return f"""Classify each email for a small service business.

Categories:
{categories}

Rules:
- spam and notification never require a reply
- inquiry, booking, quote and complaint from customers usually require a reply
- OUT lines were sent by the business owner; they never require a reply

Emails (index|direction|from|subject|snippet):
{lines}

Return a JSON array with one object per email, in any order:
[{{"i":0,"c":"inquiry","r":true,"conf":0.9}}]
i = index, c = category, r = requires reply, conf = confidence 0-1.
Optionally add "e" with extracted entities (name, phone, address, date) when present."""


def parse_classification_response(text: str) -> Optional[dict]:
    """Map index -> raw item. None when nothing could be parsed at all."""
    items = extract_json_array(text)
    if items is None:
        return None
    out = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            idx = int(item.get("i", item.get("index")))
        except (TypeError, ValueError):
            continue
        out.setdefault(idx, item)
    return out


def count_unclassified(db: Session, workspace_id: str) -> int:
    return int(db.scalar(
        select(func.count()).select_from(StagingMessage).where(
            StagingMessage.workspace_id == workspace_id,
            StagingMessage.category.is_(None),
        )
    ) or 0)


def _chunk_list(items: list, chunk_size: int) -> list[list]:
    if chunk_size <= 0:
        return [items]
    return [items[i : i + chunk_size] for i in range(0, len(items), chunk_size)]


def _verdicts_for_chunk(rows: list, rules: list, llm: Callable[..., str]) -> dict:
    """row.id -> fields to store."""
    verdicts = {}
    llm_rows = []
    for row in rows:
        rule = match_sender_rule(rules, row.from_email)
        if rule is not None:
            verdicts[row.id] = {
                "category": rule.default_classification,
                "requires_reply": bool(rule.default_requires_reply) and row.direction != "outbound",
                "confidence": 1.0,
                "needs_review": False,
                "entities": None,
                "classified_by": "sender_rule",
            }
            rule.hit_count = (rule.hit_count or 0) + 1
        else:
            llm_rows.append(row)

    if not llm_rows:
        return verdicts

    parsed = None
    try:
        text = llm(build_classification_prompt(llm_rows), system=SYSTEM_PROMPT, max_tokens=settings.classify_max_tokens)
        parsed = parse_classification_response(text)
        if parsed is None:
            logger.warning(f"Classifier output unparseable for {len(llm_rows)} emails; marking unknown")
    except Exception as e:
        logger.error(f"Classifier LLM call failed for {len(llm_rows)} emails: {e}")

    missing = 0
    for i, row in enumerate(llm_rows):
        item = parsed.get(i) if parsed else None
        if item is None:
            missing += 1
            verdict = {**unknown_verdict(), "entities": None, "classified_by": "fallback"}
        else:
            verdict = apply_triage_policy(
                item.get("c") or item.get("category"),
                item.get("r", item.get("requires_reply")),
                item.get("conf", item.get("confidence")),
                direction=row.direction,
            )
            entities = item.get("e") or item.get("entities")
            verdict["entities"] = entities if isinstance(entities, dict) else None
            verdict["classified_by"] = "llm"
        verdicts[row.id] = verdict
    if parsed is not None and missing:
        logger.warning(f"Classifier response missing {missing}/{len(llm_rows)} emails; marked for review")
    return verdicts


def _apply_verdicts(db: Session, rows: list, verdicts: dict) -> None:
    """Write results in small groups, one commit per group."""
    now = utcnow()
    for group in _chunk_list(rows, settings.classify_update_group_size):
        for row in group:
            verdict = verdicts.get(row.id) or {**unknown_verdict(), "entities": None, "classified_by": "fallback"}
            row.category = verdict["category"]
            row.requires_reply = verdict["requires_reply"]
            row.confidence = verdict["confidence"]
            row.needs_review = verdict["needs_review"]
            row.entities = verdict.get("entities")
            row.classified_by = verdict.get("classified_by")
            row.classified_at = now
            row.status = "classified"
        db.commit()


def _classification_totals(db: Session, workspace_id: str) -> dict:
    classified = db.scalar(
        select(func.count()).select_from(StagingMessage).where(
            StagingMessage.workspace_id == workspace_id, StagingMessage.category.is_not(None)
        )
    )
    review = db.scalar(
        select(func.count()).select_from(StagingMessage).where(
            StagingMessage.workspace_id == workspace_id, StagingMessage.needs_review.is_(True)
        )
    )
    return {"emails_classified": int(classified or 0), "emails_needing_review": int(review or 0)}


def run_classify_batch(
    db: Session,
    workspace_id: str,
    relay_depth: int = 0,
    llm: Optional[Callable[..., str]] = None,
    dispatcher=None,
    deadline: Optional[Deadline] = None,
) -> dict:
    """One classifier hop: chunks until the budget runs out, then relay or hand off to voice learning."""
    llm = llm or call_llm
    dispatcher = dispatcher or default_dispatcher
    deadline = deadline or Deadline(settings.relay_time_budget_s)

    holder = uuid.uuid4().hex
    if not acquire_lock(db, workspace_id, FUNCTION_NAME, holder):
        return {"status": "skipped", "reason": "already_running"}

    processed = 0
    chunks = 0
    try:
        rules = load_sender_rules(db, workspace_id)
        while deadline.has_time(settings.relay_safety_margin_s):
            rows = (
                db.query(StagingMessage)
                .filter(StagingMessage.workspace_id == workspace_id, StagingMessage.category.is_(None))
                .order_by(StagingMessage.id)
                .limit(settings.classify_chunk_size)
                .all()
            )
            if not rows:
                break
            verdicts = _verdicts_for_chunk(rows, rules, llm)
            _apply_verdicts(db, rows, verdicts)
            processed += len(rows)
            chunks += 1
            renew_lock(db, workspace_id, FUNCTION_NAME, holder)
            update_import_progress(
                db, workspace_id, current_phase="classifying", **_classification_totals(db, workspace_id)
            )
            logger.info(f"Workspace {workspace_id}: classified chunk {chunks} ({len(rows)} emails)")

        remaining = count_unclassified(db, workspace_id)
        totals = _classification_totals(db, workspace_id)
        if remaining == 0:
            update_import_progress(db, workspace_id, current_phase="learning", **totals)
    finally:
        release_lock(db, workspace_id, FUNCTION_NAME, holder)

    result = {"processed": processed, "chunks": chunks, "remaining": remaining, **totals}
    if remaining == 0:
        logger.info(f"Workspace {workspace_id}: classification complete ({totals['emails_classified']} emails)")
        dispatcher.dispatch(LEARN_VOICE_TASK, {"workspace_id": workspace_id}, 0)
        return {"status": "completed", **result}

    dispatcher.dispatch(
        CLASSIFY_RELAY_TASK,
        {"workspace_id": workspace_id, "relay_depth": relay_depth + 1},
        0,
    )
    return {"status": "continuing", "relay_depth": relay_depth + 1, **result}
