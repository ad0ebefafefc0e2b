"""Email categories and the reply/review policy shared by bulk classification and single-conversation triage."""
from typing import Optional

from ..config import settings

EMAIL_CATEGORIES = {
    "inquiry": "Questions about services, availability or prices",
    "booking": "Booking, rescheduling or cancelling an appointment",
    "quote": "Requests for a quote or estimate",
    "complaint": "Unhappy customer, problem with work done",
    "follow_up": "Follow-up on an earlier conversation",
    "spam": "Unsolicited sales, SEO offers, scams",
    "notification": "Automated notices, receipts, newsletters, system mail",
    "personal": "Personal mail unrelated to the business",
}

# Never need a reply, whatever the model says.
NO_REPLY_CATEGORIES = {"spam", "notification"}
# Need a reply when the model doesn't say otherwise.
REPLY_CATEGORIES = {"inquiry", "booking", "quote", "complaint"}

UNKNOWN_CATEGORY = "unknown"
DEFAULT_MODEL_CONFIDENCE = 0.75


def normalize_category(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    key = value.strip().lower().replace("-", "_").replace(" ", "_")
    return key if key in EMAIL_CATEGORIES else None


def _as_bool(value) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("true", "yes", "y", "1"):
            return True
        if v in ("false", "no", "n", "0"):
            return False
    return None


def _as_confidence(value) -> float:
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return DEFAULT_MODEL_CONFIDENCE
    if conf > 1.0 and conf <= 100.0:
        conf = conf / 100.0
    return min(1.0, max(0.0, conf))


def apply_triage_policy(
    category,
    requires_reply=None,
    confidence=None,
    direction: str = "inbound",
    threshold: Optional[float] = None,
) -> dict:
    """
    Normalize a raw model verdict into stored fields.

    - unknown category -> "unknown" + needs_review
    - spam / notification -> requires_reply False
    - outbound mail -> requires_reply False
    - confidence below threshold -> needs_review
    """
    threshold = settings.classify_confidence_threshold if threshold is None else threshold
    cat = normalize_category(category)
    needs_review = False
    if cat is None:
        cat = UNKNOWN_CATEGORY
        needs_review = True

    reply = _as_bool(requires_reply)
    if reply is None:
        reply = cat in REPLY_CATEGORIES
    if cat in NO_REPLY_CATEGORIES or direction == "outbound":
        reply = False

    conf = _as_confidence(confidence) if confidence is not None else DEFAULT_MODEL_CONFIDENCE
    if cat == UNKNOWN_CATEGORY:
        conf = 0.0
    if conf < threshold:
        needs_review = True

    return {
        "category": cat,
        "requires_reply": reply,
        "confidence": conf,
        "needs_review": needs_review,
    }


def unknown_verdict() -> dict:
    """Fallback when the model produced nothing usable for an email."""
    return {
        "category": UNKNOWN_CATEGORY,
        "requires_reply": False,
        "confidence": 0.0,
        "needs_review": True,
    }
