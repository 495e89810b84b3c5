import pytest

from quillswitch.services.field_mapper import FieldMapper
from quillswitch.services.llm_inference import LLMMappingAdvisor


class ScriptedAdvisor(LLMMappingAdvisor):
    """LLMMappingAdvisor answering every prompt with a fixed reply."""

    def __init__(self, reply, **kwargs):
        kwargs.setdefault("api_key", "test-key")
        super().__init__(**kwargs)
        self.reply = reply
        self.prompts = []

    def _call_llm(self, prompt, expect_json=False):
        self.prompts.append(prompt)
        if isinstance(self.reply, str):
            return self._extract_json(self.reply)
        return self.reply


def test_mappings_wrapped_in_an_object_are_parsed():
    advisor = ScriptedAdvisor({"mappings": [
        {"source_field": "email_address", "destination_field": "email", "confidence": 0.95, "reasoning": "same data"},
        {"source_field": "fname", "target_field": "firstname"},
        {"source_field": "", "destination_field": "lastname"},
        "not a mapping",
    ]})

    suggestions = advisor.suggest_mappings(["email_address", "fname"], ["email", "firstname"], ["email"], "contacts")

    assert [(s.source_field, s.destination_field) for s in suggestions] == [
        ("email_address", "email"),
        ("fname", "firstname"),
    ]
    assert suggestions[0].reason == "same data"
    assert suggestions[1].confidence == 0.8
    assert suggestions[1].reason == "Suggested by openai"
    assert "contacts" in advisor.prompts[0]


def test_suggestions_key_and_confidence_bounds():
    advisor = ScriptedAdvisor({"suggestions": [
        {"source_field": "email", "destination_field": "email", "confidence": 7},
        {"source_field": "phone", "destination_field": "phone", "confidence": -1},
    ]}, provider="anthropic")

    suggestions = advisor.suggest_mappings(["email", "phone"], ["email", "phone"])

    assert [s.confidence for s in suggestions] == [1.0, 0.0]
    assert suggestions[0].reason == "Suggested by anthropic"


def test_reply_without_a_list_gives_no_suggestions():
    assert ScriptedAdvisor({"mappings": "none"}).suggest_mappings(["a"], ["b"]) == []


def test_json_is_pulled_out_of_prose():
    advisor = ScriptedAdvisor('Sure! Here you go:\n[{"source_field": "a", "destination_field": "b"}]\nGood luck.')

    suggestions = advisor.suggest_mappings(["a"], ["b"])

    assert [(s.source_field, s.destination_field) for s in suggestions] == [("a", "b")]


def test_reply_without_json_is_an_error():
    advisor = ScriptedAdvisor("I could not find any matching fields.")

    with pytest.raises(ValueError, match="no JSON"):
        advisor.suggest_mappings(["a"], ["b"])


def test_missing_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    advisor = LLMMappingAdvisor()

    with pytest.raises(RuntimeError, match="No API key"):
        advisor.suggest_mappings(["a"], ["b"])


def test_api_key_and_model_defaults(monkeypatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "g-key")

    advisor = LLMMappingAdvisor(provider="google")

    assert advisor.api_key == "g-key"
    assert advisor.model == "gemini-1.5-pro"
    with pytest.raises(ValueError, match="Unsupported provider"):
        LLMMappingAdvisor(provider="cohere")


def test_field_mapper_degrades_when_the_reply_is_unusable():
    mapper = FieldMapper(advisor=ScriptedAdvisor("no json at all"))

    result = mapper.suggest_mappings(["email"], ["email"])

    assert result.provider == "heuristic"
    assert [s.destination_field for s in result.suggestions] == ["email"]
