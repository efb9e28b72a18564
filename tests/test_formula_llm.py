"""
Tests for the OpenAI formula collaborator (client mocked).
"""

import json
from unittest.mock import Mock

import openai
import pytest

from dutycalc.errors import ExternalServiceError
from dutycalc.services.formula_llm import FormulaLLM


def _llm_with_response(content):
    llm = FormulaLLM(api_key="test-key", model="gpt-4o", timeout=5)
    client = Mock()
    client.chat.completions.create.return_value = Mock(
        choices=[Mock(message=Mock(content=content))]
    )
    llm._client = client
    return llm


class TestFormulaLLM:

    def test_parses_contract(self):
        llm = _llm_with_response(json.dumps({
            "formula": "value * 0.05",
            "variables": ["value"],
            "confidence": 0.92,
            "explanation": "5% ad valorem",
        }))

        proposal = llm.propose("5 percent of the value")

        assert proposal.formula == "value * 0.05"
        assert proposal.variables == ["value"]
        assert proposal.confidence == 0.92
        assert proposal.explanation == "5% ad valorem"

    def test_zero_confidence_is_kept(self):
        llm = _llm_with_response(json.dumps({"formula": "value * 0.05", "variables": ["value"], "confidence": 0}))

        assert llm.propose("anything").confidence == 0

    def test_requests_json_output(self):
        llm = _llm_with_response(json.dumps({"formula": "0", "confidence": 1}))

        llm.propose("Free", unit_of_quantity="kg")

        kwargs = llm._client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["model"] == "gpt-4o"
        assert "Free" in kwargs["messages"][0]["content"]
        assert "kg" in kwargs["messages"][0]["content"]

    @pytest.mark.parametrize("content", [
        None,
        "",
        "not json",
        json.dumps({"formula": "value * 0.05"}),                       # confidence missing
        json.dumps({"formula": "value * 0.05", "confidence": None}),   # confidence null
        json.dumps({"formula": "value * 0.05", "confidence": 1.5}),    # out of range
        json.dumps({"formula": "value * 0.05", "confidence": True}),   # boolean
        json.dumps({"formula": "value * 0.05", "confidence": "0.95"}), # numeric string
        json.dumps({"formula": "", "confidence": 0.5}),
        json.dumps(["value * 0.05"]),
    ])
    def test_contract_violations(self, content):
        llm = _llm_with_response(content)

        with pytest.raises(ExternalServiceError):
            llm.propose("anything")

    def test_transport_failure(self):
        llm = FormulaLLM(api_key="test-key")
        llm._client = Mock()
        llm._client.chat.completions.create.side_effect = openai.OpenAIError("connection reset")

        with pytest.raises(ExternalServiceError, match="connection reset"):
            llm.propose("anything")

    def test_missing_api_key(self):
        llm = FormulaLLM(api_key="")
        llm.api_key = None

        with pytest.raises(ExternalServiceError):
            llm.propose("anything")
