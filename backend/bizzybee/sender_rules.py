"""Sender rules: deterministic classification for known senders, applied before any LLM call."""
import fnmatch
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from .models import SenderRule


def _specificity(pattern: str) -> int:
    pattern = (pattern or "").strip().lower()
    if "*" in pattern or "?" in pattern:
        return 2
    if pattern.startswith("@"):
        return 1
    return 0


def rule_matches(pattern: str, email: str) -> bool:
    """Exact address, '@domain', '*@domain', or a shell-style wildcard."""
    pattern = (pattern or "").strip().lower()
    email = (email or "").strip().lower()
    if not pattern or not email:
        return False
    if pattern.startswith("*@") and "*" not in pattern[1:]:
        return email.endswith(pattern[1:])
    if pattern.startswith("@"):
        return email.endswith(pattern)
    if "*" in pattern or "?" in pattern:
        return fnmatch.fnmatchcase(email, pattern)
    return email == pattern


def load_sender_rules(db: Session, workspace_id: str) -> list[SenderRule]:
    """Active rules, most specific first (exact > domain > wildcard), then oldest first."""
    rules = (
        db.query(SenderRule)
        .filter(SenderRule.workspace_id == workspace_id, SenderRule.is_active.is_(True))
        .order_by(SenderRule.id)
        .all()
    )
    return sorted(rules, key=lambda r: _specificity(r.sender_pattern))


def match_sender_rule(rules: Iterable[SenderRule], email: Optional[str]) -> Optional[SenderRule]:
    for rule in rules:
        if rule_matches(rule.sender_pattern, email or ""):
            return rule
    return None
