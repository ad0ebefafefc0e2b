import json

from bizzybee.import_job_db import get_import_progress
from bizzybee.models import BusinessContext, Conversation, Message, StagingMessage, VoiceProfile
from bizzybee.services.drafting import generate_draft
from bizzybee.services.voice_learning import learn_voice_profile


def test_voice_profile_from_sent_mail(db_session):
    db_session.add_all([
        StagingMessage(workspace_id="ws_1", external_id=f"s{i}", direction="outbound", has_body=True,
                       subject=f"Re: job {i}", body="Hi there, happy to help. Cheers, Sam")
        for i in range(3)
    ] + [
        StagingMessage(workspace_id="ws_1", external_id="in1", direction="inbound", has_body=True, body="inbound"),
    ])
    db_session.commit()
    prompts = []

    def fake_llm(prompt, max_tokens=800, **kwargs):
        prompts.append(prompt)
        return json.dumps({
            "tone": "warm and brief",
            "greeting": "Hi there",
            "sign_off": "Cheers, Sam",
            "average_length": 9,
            "common_phrases": ["happy to help"],
        })

    result = learn_voice_profile(db_session, "ws_1", llm=fake_llm)

    assert result["status"] == "completed"
    assert result["sample_size"] == 3
    assert "inbound" not in prompts[0]
    profile = db_session.query(VoiceProfile).one()
    assert (profile.tone, profile.sign_off, profile.average_length) == ("warm and brief", "Cheers, Sam", 9)
    assert profile.common_phrases == ["happy to help"]
    assert get_import_progress(db_session, "ws_1").current_phase == "completed"


def test_voice_learning_without_sent_mail_still_completes(db_session):
    def fake_llm(prompt, **kwargs):
        raise AssertionError("no samples, no model call")

    result = learn_voice_profile(db_session, "ws_1", llm=fake_llm)

    assert result["sample_size"] == 0
    assert db_session.query(VoiceProfile).one().sample_size == 0
    assert get_import_progress(db_session, "ws_1").current_phase == "completed"


def test_draft_uses_business_and_voice(db_session):
    db_session.add(BusinessContext(workspace_id="ws_1", company_name="Bright Plumbing", services=["boilers"]))
    db_session.add(VoiceProfile(workspace_id="ws_1", tone="friendly", greeting="Hiya", sign_off="Ta, Bo"))
    conversation = Conversation(workspace_id="ws_1", external_conversation_id="aurinko_t1", category="booking")
    db_session.add(conversation)
    db_session.commit()
    db_session.add(Message(conversation_id=conversation.id, external_id="m1", direction="inbound",
                           from_email="jane@example.com", body="Can you fix my boiler Friday?"))
    db_session.commit()
    prompts = []

    def fake_llm(prompt, max_tokens=700, **kwargs):
        prompts.append(prompt)
        return "  Hiya Jane, Friday works. Ta, Bo  "

    draft = generate_draft(db_session, conversation.id, llm=fake_llm)

    assert draft == "Hiya Jane, Friday works. Ta, Bo"
    assert "Bright Plumbing" in prompts[0]
    assert "Hiya" in prompts[0]
    assert "Can you fix my boiler Friday?" in prompts[0]
    db_session.refresh(conversation)
    assert conversation.ai_draft_response == draft
    assert conversation.draft_generated_at is not None


def test_no_draft_without_inbound_message(db_session):
    conversation = Conversation(workspace_id="ws_1", external_conversation_id="aurinko_t2")
    db_session.add(conversation)
    db_session.commit()
    assert generate_draft(db_session, conversation.id, llm=lambda *a, **k: "x") is None
