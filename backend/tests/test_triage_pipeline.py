import json


def test_triage_with_model_verdict(monkeypatch):
    """Full graph with a mocked LLM (no network)."""
    from bizzybee import triage_pipeline as tp

    def fake_call_llm(prompt: str, max_tokens: int = 300) -> str:
        assert "Can you come out Tuesday" in prompt
        return json.dumps({
            "category": "booking",
            "requires_reply": True,
            "confidence": 0.88,
            "reasoning": "Customer wants an appointment.",
        })

    monkeypatch.setattr(tp, "_call_llm", fake_call_llm)

    result = tp.triage_email(
        from_email="Jane@Example.com",
        subject="Boiler service",
        body="Hi, Can you come out Tuesday to look at the boiler?",
    )

    assert result["category"] == "booking"
    assert result["requires_reply"] is True
    assert result["confidence"] == 0.88
    assert result["needs_review"] is False
    assert result["triage_source"] == "llm"
    assert result["processing_status"] == "completed"


def test_sender_rule_short_circuits_model(monkeypatch):
    from bizzybee import triage_pipeline as tp

    def fail_call_llm(prompt: str, max_tokens: int = 300) -> str:
        raise AssertionError("model must not be called for rule-matched senders")

    monkeypatch.setattr(tp, "_call_llm", fail_call_llm)

    result = tp.triage_email(
        from_email="noreply@stripe.com",
        subject="Payout sent",
        body="Your payout is on its way.",
        sender_rules=[{"pattern": "@stripe.com", "category": "notification", "requires_reply": False}],
    )

    assert result["category"] == "notification"
    assert result["confidence"] == 1.0
    assert result["triage_source"] == "sender_rule"
    assert result["processing_status"] == "completed"


def test_model_failure_needs_review(monkeypatch):
    from bizzybee import triage_pipeline as tp

    def broken_call_llm(prompt: str, max_tokens: int = 300) -> str:
        raise RuntimeError("timeout")

    monkeypatch.setattr(tp, "_call_llm", broken_call_llm)

    result = tp.triage_email(from_email="a@b.com", subject="?", body="?")

    assert result["category"] == "unknown"
    assert result["needs_review"] is True
    assert result["processing_status"] == "failed"


def test_spam_never_requires_reply(monkeypatch):
    from bizzybee import triage_pipeline as tp

    monkeypatch.setattr(
        tp, "_call_llm",
        lambda prompt, max_tokens=300: '{"category": "spam", "requires_reply": true, "confidence": 0.97}',
    )

    result = tp.triage_email(from_email="seo@growth.biz", subject="Rank #1", body="Cheap backlinks")

    assert result["category"] == "spam"
    assert result["requires_reply"] is False
