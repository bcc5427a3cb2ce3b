"""
Tests for fix-suggestion parsing and prompt construction.
"""

import json

import pytest

from healforge.errors import ValidationError
from healforge.llm import build_fix_prompt, parse_fix_response


REPLY = {
    "analysis": "The variable x is declared but never used.",
    "rootCause": "Unused variable",
    "suggestedFix": {
        "description": "Remove x",
        "files": [{"path": "src/app.ts", "action": "modify", "content": "export {};\n"}],
    },
    "confidence": 0.85,
}


def test_parse_plain_json():
    suggestion = parse_fix_response(json.dumps(REPLY))

    assert suggestion.root_cause == "Unused variable"
    assert suggestion.description == "Remove x"
    assert suggestion.files[0].path == "src/app.ts"
    assert suggestion.files[0].content == "export {};\n"
    assert suggestion.confidence == 0.85
    assert suggestion.additional_notes is None


def test_parse_json_inside_prose():
    """Models sometimes wrap the object in a fenced block."""
    text = f"Here is the fix:\n```json\n{json.dumps(REPLY)}\n```\nGood luck."

    assert parse_fix_response(text).description == "Remove x"


def test_parse_round_trips_to_dict():
    suggestion = parse_fix_response(json.dumps(REPLY))

    assert suggestion.to_dict()["suggestedFix"]["files"][0]["action"] == "modify"


@pytest.mark.parametrize("text", [
    "I could not find a fix.",
    "{not: json}",
    json.dumps({**REPLY, "confidence": 3}),
    json.dumps({**REPLY, "suggestedFix": {"description": "x", "files": [{"path": "a", "action": "rename"}]}}),
    json.dumps({"analysis": "only"}),
])
def test_parse_rejects_bad_replies(text):
    with pytest.raises(ValidationError):
        parse_fix_response(text)


def test_build_fix_prompt():
    prompt = build_fix_prompt('Job "lint" failed', {"src/app.ts": "const x = 1;"}, context='{"attempt": 2}')

    assert 'Job "lint" failed' in prompt
    assert "### src/app.ts" in prompt
    assert "const x = 1;" in prompt
    assert '{"attempt": 2}' in prompt
    assert "(none)" in build_fix_prompt("boom", {})
