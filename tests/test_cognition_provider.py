"""Tests for capdispatch.cognition.provider."""

from __future__ import annotations

import pytest

from capdispatch.cognition.provider import (
    FunctionCall,
    FunctionResult,
    Provider,
    ProviderResponse,
    ReasoningPart,
    Role,
    TranscriptEntry,
    Usage,
    transcript_from_messages,
)


class TestTranscriptEntry:
    def test_user(self):
        entry = TranscriptEntry.user("How much did we sell?")
        assert entry.role is Role.USER
        assert entry.text == "How much did we sell?"
        assert entry.function_calls == ()

    def test_model_with_calls(self):
        call = FunctionCall("get_total", {"period": "2024-01"}, id="c1")
        entry = TranscriptEntry.model(
            reasoning=[ReasoningPart("thinking", signature="sig")],
            function_calls=[call],
        )
        assert entry.role is Role.MODEL
        assert entry.function_calls == (call,)
        assert entry.reasoning[0].signature == "sig"

    def test_function_results(self):
        result = FunctionResult("get_total", {"ok": True, "data": {}}, call_id="c1")
        entry = TranscriptEntry.function([result])
        assert entry.role is Role.FUNCTION
        assert entry.function_results == (result,)
        assert entry.text == ""


class TestTranscriptFromMessages:
    def test_roles_mapped(self):
        entries = transcript_from_messages(
            [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello!"},
                {"role": "USER", "content": "Sales?"},
            ]
        )
        assert [e.role for e in entries] == [Role.USER, Role.MODEL, Role.USER]
        assert entries[1].text == "Hello!"

    def test_missing_content(self):
        assert transcript_from_messages([{"role": "user"}])[0].text == ""

    def test_unknown_role(self):
        with pytest.raises(ValueError, match="system"):
            transcript_from_messages([{"role": "system", "content": "x"}])


class TestProviderResponse:
    def test_text_concatenates_parts(self):
        response = ProviderResponse(text_parts=("Total: ", "500"))
        assert response.text == "Total: 500"
        assert not response.has_function_calls

    def test_defaults(self):
        response = ProviderResponse()
        assert response.text == ""
        assert response.usage == Usage()

    def test_has_function_calls(self):
        response = ProviderResponse(function_calls=(FunctionCall("x"),))
        assert response.has_function_calls


class TestProtocol:
    def test_runtime_checkable(self):
        class Scripted:
            async def generate(self, transcript, functions, reasoning, *, system=None,
                               allow_function_calls=True):
                return ProviderResponse()

        assert isinstance(Scripted(), Provider)
        assert not isinstance(object(), Provider)
