from bizzybee.llm_client import extract_json_array, extract_json_object


def test_strict_array():
    assert extract_json_array('[{"i": 0, "c": "spam"}]') == [{"i": 0, "c": "spam"}]


def test_fenced_array_with_chatter():
    text = 'Sure! Here you go:\n```json\n[{"i": 0}, {"i": 1}]\n```\nLet me know.'
    assert extract_json_array(text) == [{"i": 0}, {"i": 1}]


def test_wrapped_array():
    assert extract_json_array('{"results": [{"i": 3}]}') == [{"i": 3}]


def test_truncated_array_salvages_complete_objects():
    text = '[{"i": 0, "c": "quote"}, {"i": 1, "c": "spam", "note": "has } brace"}, {"i": 2, "c": "boo'
    assert extract_json_array(text) == [
        {"i": 0, "c": "quote"},
        {"i": 1, "c": "spam", "note": "has } brace"},
    ]


def test_garbage_returns_none():
    assert extract_json_array("I could not classify these emails.") is None
    assert extract_json_array("") is None


def test_extract_object():
    assert extract_json_object('```json\n{"tone": "warm"}\n```') == {"tone": "warm"}
    assert extract_json_object('profile: {"tone": "direct"} done') == {"tone": "direct"}
    assert extract_json_object("[1, 2]") == {}
    assert extract_json_object("nope") == {}
