"""
FAQ consolidation: turn competitor FAQs into the workspace's own.

Three passes, each chunked and relay-safe:
1. filter  - keep FAQs relevant to this business (a failed chunk keeps everything)
2. dedup   - collapse duplicate topics, keeping the most complete answer
3. adapt   - rewrite the remaining gap topics with this business's details,
             skipping topics the owner's own FAQs already cover

Per-chunk results are stored in `consolidation_state` keyed by (run_id, phase),
so a hop that is retried overwrites its own chunk instead of appending twice,
and the relay payload stays small (run_id, phase, chunk_index, relay_depth).
The final write replaces all `competitor_adapted` rows in one transaction.
"""
import copy
import logging
import re
import uuid
from typing import Callable, Optional

from sqlalchemy import delete, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..llm_client import call_llm, extract_json_array
from ..models import BusinessContext, ConsolidationState, FaqEntry, WorkflowProgress, utcnow
from ..relay import CONSOLIDATE_RELAY_TASK, Deadline, default_dispatcher
from ..worker_lock import acquire_lock, release_lock, renew_lock

logger = logging.getLogger(__name__)

FUNCTION_NAME = "consolidate-faqs"
WORKFLOW_TYPE = "consolidation"
ADAPTED_SOURCE = "competitor_adapted"
ADAPTED_PRIORITY = 8


def normalize_question(question: Optional[str]) -> str:
    text = re.sub(r"[^a-z0-9\s]", " ", (question or "").lower())
    return " ".join(text.split())


def _chunk_list(items: list, chunk_size: int) -> list[list]:
    if chunk_size <= 0:
        return [items]
    return [items[i : i + chunk_size] for i in range(0, len(items), chunk_size)]


def _clip(text: Optional[str], max_len: int) -> str:
    return " ".join((text or "").replace("|", "/").split())[:max_len]


# =============================================================================
# Data access
# =============================================================================

def load_source_faqs(db: Session, workspace_id: str) -> list[FaqEntry]:
    """Active competitor FAQs that are not themselves earlier adaptations."""
    return (
        db.query(FaqEntry)
        .filter(
            FaqEntry.workspace_id == workspace_id,
            FaqEntry.is_own_content.is_(False),
            FaqEntry.is_active.is_(True),
            or_(FaqEntry.generation_source.is_(None), FaqEntry.generation_source != ADAPTED_SOURCE),
        )
        .order_by(FaqEntry.id)
        .all()
    )


def load_owner_faqs(db: Session, workspace_id: str) -> list[FaqEntry]:
    return (
        db.query(FaqEntry)
        .filter(
            FaqEntry.workspace_id == workspace_id,
            FaqEntry.is_active.is_(True),
            or_(FaqEntry.is_own_content.is_(True), FaqEntry.generation_source == "website_extraction"),
        )
        .order_by(FaqEntry.id)
        .all()
    )


def _get_state(db: Session, run_id: str, phase: str) -> dict:
    row = (
        db.query(ConsolidationState)
        .filter(ConsolidationState.run_id == run_id, ConsolidationState.phase == phase)
        .first()
    )
    return copy.deepcopy(row.data or {}) if row else {}


def _save_state(db: Session, run_id: str, workspace_id: str, phase: str, data: dict) -> None:
    row = (
        db.query(ConsolidationState)
        .filter(ConsolidationState.run_id == run_id, ConsolidationState.phase == phase)
        .first()
    )
    if row is None:
        db.add(ConsolidationState(run_id=run_id, workspace_id=workspace_id, phase=phase, data=data))
    else:
        row.data = data
        row.updated_at = utcnow()
    db.commit()


def _chunk_results(state: dict, count: int) -> list:
    """Flatten per-chunk results in chunk order."""
    chunks = state.get("chunks") or {}
    out = []
    for i in range(count):
        out.extend(chunks.get(str(i)) or [])
    return out


def set_workflow_progress(db: Session, workspace_id: str, status: str, **details) -> None:
    row = (
        db.query(WorkflowProgress)
        .filter(WorkflowProgress.workspace_id == workspace_id, WorkflowProgress.workflow_type == WORKFLOW_TYPE)
        .first()
    )
    if row is None:
        db.add(WorkflowProgress(workspace_id=workspace_id, workflow_type=WORKFLOW_TYPE, status=status, details=details))
        try:
            db.commit()
            return
        except IntegrityError:
            db.rollback()
            row = (
                db.query(WorkflowProgress)
                .filter(WorkflowProgress.workspace_id == workspace_id, WorkflowProgress.workflow_type == WORKFLOW_TYPE)
                .first()
            )
    row.status = status
    row.details = {**(row.details or {}), **details}
    row.updated_at = utcnow()
    db.commit()


def _business_summary(business: Optional[BusinessContext]) -> str:
    if business is None:
        return "A small local service business."
    parts = []
    if business.company_name:
        parts.append(f"Company: {business.company_name}")
    if business.business_type:
        parts.append(f"Type: {business.business_type}")
    if business.services:
        parts.append("Services: " + ", ".join(str(s) for s in business.services))
    if business.service_area:
        parts.append(f"Area: {business.service_area}")
    if business.phone:
        parts.append(f"Phone: {business.phone}")
    if business.email:
        parts.append(f"Email: {business.email}")
    if business.website:
        parts.append(f"Website: {business.website}")
    return "\n".join(parts) or "A small local service business."


# =============================================================================
# Pass 1: filter
# =============================================================================

def filter_chunk(chunk: list[FaqEntry], business: Optional[BusinessContext], llm: Callable[..., str]) -> list[int]:
    """IDs worth keeping. Any failure keeps the whole chunk."""
    all_ids = [f.id for f in chunk]
    lines = "\n".join(f"{f.id}|{_clip(f.question, 200)}|{_clip(f.answer, 200)}" for f in chunk)
    prompt = f"""Business:
{_business_summary(business)}

Below are FAQs collected from competitor websites (id|question|answer).
Keep only FAQs a customer of THIS business could plausibly ask.
Drop anything about services it doesn't offer, competitor-specific policies, jobs, or website navigation.

{lines}

Return a JSON array of the ids to keep, e.g. [12, 15, 19]."""
    try:
        parsed = extract_json_array(llm(prompt, max_tokens=1500))
    except Exception as e:
        logger.warning(f"FAQ filter chunk failed ({e}); keeping all {len(chunk)}")
        return all_ids
    if parsed is None:
        logger.warning(f"FAQ filter output unparseable; keeping all {len(chunk)}")
        return all_ids
    valid = set(all_ids)
    kept = []
    for item in parsed:
        value = item.get("id") if isinstance(item, dict) else item
        try:
            fid = int(value)
        except (TypeError, ValueError):
            continue
        if fid in valid and fid not in kept:
            kept.append(fid)
    return kept


# =============================================================================
# Pass 2: dedup
# =============================================================================

def _topic_from_faq(faq: FaqEntry) -> dict:
    return {
        "question": faq.question,
        "answer": faq.answer,
        "category": faq.category or "General",
        "original_faq_id": faq.id,
        "source_ids": [faq.id],
    }


def collapse_exact_duplicates(faqs: list[FaqEntry]) -> list[dict]:
    """Same normalized question -> one topic carrying the longest answer."""
    by_key: dict[str, dict] = {}
    order = []
    for faq in faqs:
        key = normalize_question(faq.question)
        if not key:
            continue
        topic = by_key.get(key)
        if topic is None:
            by_key[key] = _topic_from_faq(faq)
            order.append(key)
            continue
        topic["source_ids"].append(faq.id)
        if len(faq.answer or "") > len(topic["answer"] or ""):
            topic["answer"] = faq.answer
            topic["original_faq_id"] = faq.id
    return [by_key[k] for k in order]


def _merge_group(topics: list[dict], question: Optional[str] = None, category: Optional[str] = None) -> dict:
    """Representative = the most complete answer in the group, keeping its original text."""
    best = max(topics, key=lambda t: len(t.get("answer") or ""))
    source_ids = []
    for t in topics:
        for sid in t.get("source_ids") or []:
            if sid not in source_ids:
                source_ids.append(sid)
    return {
        "question": (question or "").strip() or best["question"],
        "answer": best["answer"],
        "category": (category or "").strip() or best.get("category") or "General",
        "original_faq_id": best.get("original_faq_id"),
        "source_ids": source_ids,
    }


def _apply_groups(topics: list[dict], groups: list) -> list[dict]:
    """Merge index groups; indexes not mentioned stay as they are."""
    used = set()
    merged = []
    for group in groups:
        if isinstance(group, dict):
            indexes = group.get("indexes") or group.get("ids") or group.get("group") or []
            question, category = group.get("question"), group.get("category")
        else:
            indexes, question, category = group, None, None
        members = []
        for idx in indexes if isinstance(indexes, list) else []:
            try:
                i = int(idx)
            except (TypeError, ValueError):
                continue
            if 0 <= i < len(topics) and i not in used:
                used.add(i)
                members.append(topics[i])
        if members:
            merged.append(_merge_group(members, question, category))
    for i, topic in enumerate(topics):
        if i not in used:
            merged.append(topic)
    return merged


def dedup_topics(topics: list[dict], llm: Callable[..., str]) -> list[dict]:
    """Group near-duplicate questions. Any failure passes the topics through unchanged."""
    if len(topics) < 2:
        return topics
    lines = "\n".join(f"{i}|{_clip(t['question'], 200)}" for i, t in enumerate(topics))
    prompt = f"""These FAQ questions (index|question) come from several websites.
Group questions that ask the same thing. Give each group a clear, generic question and a category.

{lines}

Return a JSON array, one object per group (include single-question groups only if you rename them):
[{{"indexes": [0, 4], "question": "How much does a callout cost?", "category": "Pricing"}}]"""
    try:
        groups = extract_json_array(llm(prompt, max_tokens=3000))
    except Exception as e:
        logger.warning(f"FAQ dedup chunk failed ({e}); passing {len(topics)} topics through")
        return topics
    if groups is None:
        logger.warning(f"FAQ dedup output unparseable; passing {len(topics)} topics through")
        return topics
    return _apply_groups(topics, groups)


# =============================================================================
# Pass 3: adapt
# =============================================================================

def adapt_chunk(
    topics: list[dict],
    business: Optional[BusinessContext],
    owner_questions: list[str],
    llm: Callable[..., str],
) -> list[dict]:
    """Rewrite topics for this business. A failed chunk is dropped rather than written unadapted."""
    if not topics:
        return []
    covered = "\n".join(f"- {_clip(q, 160)}" for q in owner_questions[:150]) or "(none)"
    lines = "\n".join(
        f"{i}|{_clip(t['question'], 200)}|{_clip(t['answer'], 600)}" for i, t in enumerate(topics)
    )
    prompt = f"""Business details:
{_business_summary(business)}

The owner already answers these questions (skip any topic that duplicates them):
{covered}

Rewrite each FAQ below (index|question|answer) so it describes THIS business.
Remove competitor names, prices and claims you cannot support from the business details.

{lines}

Return a JSON array:
[{{"i": 0, "question": "...", "answer": "...", "category": "..."}}, {{"i": 1, "skip": true}}]"""
    try:
        parsed = extract_json_array(llm(prompt, max_tokens=4000))
    except Exception as e:
        logger.warning(f"FAQ adapt chunk failed ({e}); skipping {len(topics)} topics")
        return []
    if parsed is None:
        logger.warning(f"FAQ adapt output unparseable; skipping {len(topics)} topics")
        return []

    adapted = []
    seen = set()
    for item in parsed:
        if not isinstance(item, dict) or item.get("skip"):
            continue
        try:
            i = int(item.get("i"))
        except (TypeError, ValueError):
            continue
        if not 0 <= i < len(topics) or i in seen:
            continue
        question = (item.get("question") or "").strip()
        answer = (item.get("answer") or "").strip()
        if not question or not answer:
            continue
        seen.add(i)
        adapted.append({
            "question": question,
            "answer": answer,
            "category": (item.get("category") or "").strip() or topics[i].get("category") or "General",
            "original_faq_id": topics[i].get("original_faq_id"),
        })
    return adapted


def write_adapted_faqs(db: Session, workspace_id: str, adapted: list[dict]) -> int:
    """Replace every competitor_adapted row for the workspace in one transaction."""
    try:
        db.execute(
            delete(FaqEntry).where(
                FaqEntry.workspace_id == workspace_id,
                FaqEntry.generation_source == ADAPTED_SOURCE,
            )
        )
        db.add_all([
            FaqEntry(
                workspace_id=workspace_id,
                question=item["question"],
                answer=item["answer"],
                category=item.get("category") or "General",
                priority=ADAPTED_PRIORITY,
                is_active=True,
                is_own_content=False,
                generation_source=ADAPTED_SOURCE,
                original_faq_id=item.get("original_faq_id"),
            )
            for item in adapted
        ])
        db.commit()
    except Exception:
        db.rollback()
        raise
    return len(adapted)


# =============================================================================
# Relay driver
# =============================================================================

class _Context:
    def __init__(self, db, workspace_id, run_id, llm, deadline, holder, lock_ttl_s):
        self.db = db
        self.workspace_id = workspace_id
        self.run_id = run_id
        self.llm = llm
        self.deadline = deadline
        self.holder = holder
        self.lock_ttl_s = lock_ttl_s
        self.business = db.query(BusinessContext).filter(BusinessContext.workspace_id == workspace_id).first()

    def has_time(self) -> bool:
        return self.deadline.has_time(settings.relay_safety_margin_s)

    def checkpoint(self, phase: str, state: dict) -> None:
        _save_state(self.db, self.run_id, self.workspace_id, phase, state)
        renew_lock(self.db, self.workspace_id, FUNCTION_NAME, self.holder, ttl_s=self.lock_ttl_s)


def _filtered_faqs(ctx: _Context) -> list[FaqEntry]:
    faqs = load_source_faqs(ctx.db, ctx.workspace_id)
    chunks = _chunk_list(faqs, settings.consolidate_filter_chunk)
    kept_ids = set(_chunk_results(_get_state(ctx.db, ctx.run_id, "filter"), len(chunks)))
    return [f for f in faqs if f.id in kept_ids]


def _run_filter(ctx: _Context, chunk_index: int):
    faqs = load_source_faqs(ctx.db, ctx.workspace_id)
    chunks = _chunk_list(faqs, settings.consolidate_filter_chunk)
    state = _get_state(ctx.db, ctx.run_id, "filter") if chunk_index else {}
    state.setdefault("chunks", {})
    i = chunk_index
    while i < len(chunks) and ctx.has_time():
        state["chunks"][str(i)] = filter_chunk(chunks[i], ctx.business, ctx.llm)
        i += 1
        state["total_chunks"] = len(chunks)
        ctx.checkpoint("filter", state)
        set_workflow_progress(ctx.db, ctx.workspace_id, "filtering", filter_chunks_done=i, filter_chunks=len(chunks))
    if not chunks:
        ctx.checkpoint("filter", state)
    if i < len(chunks):
        return "filter", i
    return "dedup", 0


def _run_dedup(ctx: _Context, chunk_index: int):
    faqs = _filtered_faqs(ctx)
    topics = collapse_exact_duplicates(faqs)
    chunks = _chunk_list(topics, settings.consolidate_dedup_chunk)
    state = _get_state(ctx.db, ctx.run_id, "dedup") if chunk_index else {}
    state.setdefault("chunks", {})
    i = chunk_index
    while i < len(chunks) and ctx.has_time():
        state["chunks"][str(i)] = dedup_topics(chunks[i], ctx.llm)
        i += 1
        ctx.checkpoint("dedup", state)
        set_workflow_progress(ctx.db, ctx.workspace_id, "deduplicating", dedup_chunks_done=i, dedup_chunks=len(chunks))
    if i < len(chunks):
        return "dedup", i

    merged = _chunk_results(state, len(chunks))
    if len(chunks) > 1 and not state.get("cross_done"):
        if not ctx.has_time():
            return "dedup", i
        merged = dedup_topics(merged, ctx.llm)
        state["cross_done"] = True
    state["topics"] = merged
    ctx.checkpoint("dedup", state)
    return "adapt", 0


def _run_adapt(ctx: _Context, phase: str, chunk_index: int):
    topics = _get_state(ctx.db, ctx.run_id, "dedup").get("topics") or []
    owner = load_owner_faqs(ctx.db, ctx.workspace_id)
    owner_questions = [f.question for f in owner]
    covered = {normalize_question(q) for q in owner_questions}
    gaps = [t for t in topics if normalize_question(t.get("question")) not in covered]
    chunks = _chunk_list(gaps, settings.consolidate_adapt_chunk)

    # "adapt" starts a fresh accumulator; "adapt_continue" resumes the stored one.
    state = _get_state(ctx.db, ctx.run_id, "adapt") if phase == "adapt_continue" else {}
    state.setdefault("chunks", {})
    i = chunk_index
    while i < len(chunks) and ctx.has_time():
        state["chunks"][str(i)] = adapt_chunk(chunks[i], ctx.business, owner_questions, ctx.llm)
        i += 1
        ctx.checkpoint("adapt", state)
        set_workflow_progress(ctx.db, ctx.workspace_id, "adapting", adapt_chunks_done=i, adapt_chunks=len(chunks))
    if i < len(chunks):
        return "adapt_continue", i

    adapted = _chunk_results(state, len(chunks))
    written = write_adapted_faqs(ctx.db, ctx.workspace_id, adapted)
    return "done", {
        "source_faqs": len(load_source_faqs(ctx.db, ctx.workspace_id)),
        "topics": len(topics),
        "skipped_owner_covered": len(topics) - len(gaps),
        "adapted": written,
    }


def run_consolidation_step(
    db: Session,
    workspace_id: str,
    run_id: Optional[str] = None,
    phase: str = "filter",
    chunk_index: int = 0,
    relay_depth: int = 0,
    llm: Optional[Callable[..., str]] = None,
    dispatcher=None,
    deadline: Optional[Deadline] = None,
) -> dict:
    """Run phases until done or out of budget; then relay with (run_id, phase, chunk_index)."""
    llm = llm or call_llm
    dispatcher = dispatcher or default_dispatcher
    deadline = deadline or Deadline(settings.consolidate_time_budget_s)
    if run_id is None:
        run_id, phase, chunk_index = str(uuid.uuid4()), "filter", 0
    if phase not in ("filter", "dedup", "adapt", "adapt_continue"):
        raise ValueError(f"Unknown consolidation phase: {phase}")
    if relay_depth > settings.consolidate_max_relays:
        message = f"Consolidation exceeded {settings.consolidate_max_relays} relays"
        set_workflow_progress(db, workspace_id, "error", error=message, run_id=run_id)
        return {"status": "error", "run_id": run_id, "error": message}

    holder = uuid.uuid4().hex
    lock_ttl_s = int(settings.consolidate_time_budget_s) + 60
    if not acquire_lock(db, workspace_id, FUNCTION_NAME, holder, ttl_s=lock_ttl_s):
        return {"status": "skipped", "reason": "already_running", "run_id": run_id}

    try:
        if phase == "filter" and chunk_index == 0:
            set_workflow_progress(db, workspace_id, "filtering", run_id=run_id, error=None)
        ctx = _Context(db, workspace_id, run_id, llm, deadline, holder, lock_ttl_s)
        while True:
            if phase == "filter":
                phase, nxt = _run_filter(ctx, chunk_index)
            elif phase == "dedup":
                phase, nxt = _run_dedup(ctx, chunk_index)
            else:
                phase, nxt = _run_adapt(ctx, phase, chunk_index)
            if phase == "done":
                summary = nxt
                break
            chunk_index = nxt
            if not ctx.has_time():
                summary = None
                break
    except Exception as e:
        db.rollback()
        set_workflow_progress(db, workspace_id, "error", error=str(e)[:500], run_id=run_id)
        raise
    finally:
        release_lock(db, workspace_id, FUNCTION_NAME, holder)

    if summary is not None:
        db.execute(delete(ConsolidationState).where(ConsolidationState.run_id == run_id))
        db.commit()
        set_workflow_progress(db, workspace_id, "completed", run_id=run_id, **summary)
        logger.info(f"FAQ consolidation {run_id} for workspace {workspace_id} complete: {summary}")
        return {"status": "completed", "run_id": run_id, **summary}

    payload = {
        "workspace_id": workspace_id,
        "run_id": run_id,
        "phase": phase,
        "chunk_index": chunk_index,
        "relay_depth": relay_depth + 1,
    }
    dispatcher.dispatch(CONSOLIDATE_RELAY_TASK, payload, 0)
    return {"status": "continuing", **payload}
