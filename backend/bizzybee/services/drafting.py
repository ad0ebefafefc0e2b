"""Draft replies for conversations that need one, in the owner's learned voice."""
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..llm_client import call_llm
from ..models import BusinessContext, Conversation, Message, VoiceProfile, utcnow

logger = logging.getLogger(__name__)


def build_draft_prompt(
    message: Message,
    conversation: Conversation,
    business: Optional[BusinessContext],
    voice: Optional[VoiceProfile],
) -> str:
    company = (business.company_name if business else None) or "the business"
    lines = [f"You are replying on behalf of {company}."]
    if business and business.business_type:
        lines.append(f"Business type: {business.business_type}.")
    if business and business.services:
        lines.append("Services: " + ", ".join(str(s) for s in business.services) + ".")
    if voice is not None and (voice.tone or voice.greeting or voice.sign_off):
        lines.append(
            f"Write in the owner's voice. Tone: {voice.tone or 'friendly'}. "
            f"Greeting like: {voice.greeting or 'Hi'}. Sign off like: {voice.sign_off or 'Thanks'}."
        )
        if voice.average_length:
            lines.append(f"Keep it around {voice.average_length} words.")
    lines.append(f"Conversation category: {conversation.category or 'unknown'}.")
    lines.append("")
    lines.append(f"Customer email from {message.from_name or message.from_email or 'customer'}:")
    lines.append((message.body or "").strip()[:4000])
    lines.append("")
    lines.append("Write only the reply body as plain text. Do not invent prices or dates.")
    return "\n".join(lines)


def generate_draft(db: Session, conversation_id: int, llm: Optional[Callable[..., str]] = None) -> Optional[str]:
    """Store a plain-text draft on the conversation. Returns the draft, or None when there is nothing to reply to."""
    llm = llm or call_llm
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        logger.warning(f"Draft requested for missing conversation {conversation_id}")
        return None
    message = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id, Message.direction == "inbound")
        .order_by(Message.id.desc())
        .first()
    )
    if message is None:
        return None
    business = db.query(BusinessContext).filter(BusinessContext.workspace_id == conversation.workspace_id).first()
    voice = db.query(VoiceProfile).filter(VoiceProfile.workspace_id == conversation.workspace_id).first()

    draft = llm(build_draft_prompt(message, conversation, business, voice), max_tokens=700).strip()
    if not draft:
        return None
    conversation.ai_draft_response = draft
    conversation.draft_generated_at = utcnow()
    db.commit()
    return draft
