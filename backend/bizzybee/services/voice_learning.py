"""Voice learning: summarize the owner's writing style from their sent mail."""
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..import_job_db import update_import_progress
from ..llm_client import call_llm, extract_json_object
from ..models import StagingMessage, VoiceProfile, utcnow

logger = logging.getLogger(__name__)


def _sample_outbound(db: Session, workspace_id: str, sample_size: int) -> list[StagingMessage]:
    return (
        db.query(StagingMessage)
        .filter(
            StagingMessage.workspace_id == workspace_id,
            StagingMessage.direction == "outbound",
            StagingMessage.has_body.is_(True),
        )
        .order_by(StagingMessage.received_at.desc(), StagingMessage.id.desc())
        .limit(sample_size)
        .all()
    )


def build_voice_prompt(samples: list[StagingMessage]) -> str:
    blocks = []
    for i, row in enumerate(samples):
        body = (row.body or "").strip()[:800]
        blocks.append(f"--- Email {i + 1} (subject: {(row.subject or '')[:100]})\n{body}")
    joined = "\n\n".join(blocks)
    return f"""These are emails a small business owner sent to customers.
Describe how they write so replies can be drafted in their voice.

{joined}

Return JSON:
{{"tone": "...", "greeting": "typical greeting", "sign_off": "typical sign-off",
 "average_length": <words per email>, "common_phrases": ["..."]}}"""


def learn_voice_profile(
    db: Session,
    workspace_id: str,
    llm: Optional[Callable[..., str]] = None,
    sample_size: int = 40,
) -> dict:
    llm = llm or call_llm
    samples = _sample_outbound(db, workspace_id, sample_size)
    profile = {}
    if samples:
        profile = extract_json_object(llm(build_voice_prompt(samples), max_tokens=800))
        if not profile:
            logger.warning(f"Voice profile for workspace {workspace_id}: model returned no usable JSON")
    else:
        logger.info(f"Workspace {workspace_id} has no sent mail with bodies; storing empty voice profile")

    if not samples:
        average_length = None
    else:
        try:
            average_length = int(profile.get("average_length"))
        except (TypeError, ValueError):
            average_length = int(sum(len((s.body or "").split()) for s in samples) / len(samples))

    phrases = profile.get("common_phrases")
    row = db.query(VoiceProfile).filter(VoiceProfile.workspace_id == workspace_id).first()
    if row is None:
        row = VoiceProfile(workspace_id=workspace_id)
        db.add(row)
    row.tone = profile.get("tone")
    row.greeting = profile.get("greeting")
    row.sign_off = profile.get("sign_off")
    row.average_length = average_length
    row.common_phrases = phrases if isinstance(phrases, list) else []
    row.sample_size = len(samples)
    row.raw_profile = profile or None
    row.updated_at = utcnow()
    db.commit()

    update_import_progress(db, workspace_id, current_phase="completed")
    return {"status": "completed", "sample_size": len(samples), "tone": row.tone}
