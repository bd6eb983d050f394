"""Prompt bounding and the chat-completions call."""

import json

import httpx
import pytest
import respx

from autoresponder.errors import LlmError
from autoresponder.llm_client import (
    LlmClient,
    bound_history,
    build_persona_prompt,
    build_system_instruction,
)
from autoresponder.persona_profiler import PersonaExample, PersonaProfile
from autoresponder.session_context import ChatHistoryEntry

from .helpers import make_config

LLM = "http://llm.test/v1/"
COMPLETIONS = "http://llm.test/v1/chat/completions"


def _turn(role, text):
    return ChatHistoryEntry(role=role, text=text, timestamp=0.0)


def _completion(content):
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1_700_000_000,
        "model": "gemini-test",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
        ],
    }


PERSONA = PersonaProfile(
    source="universal",
    summary="Prefers crisp replies of roughly 5 words.",
    guidelines=["Stay punchy."],
    examples=[PersonaExample(reply="on it!", user="can you check?"), PersonaExample(reply="sure")],
)


class TestBoundHistory:
    def test_turns_are_cleaned_and_mapped(self):
        turns, truncated = bound_history(
            [_turn("user", " hi "), _turn("assistant", "hello"), _turn("user", "   "), None, {"role": "x", "text": "yo"}]
        )
        assert turns == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "yo"},
        ]
        assert not truncated

    def test_long_turn_keeps_its_tail(self):
        (turn,), truncated = bound_history([_turn("user", "a" * 100 + "b" * 2000)])
        assert turn["content"] == "b" * 2000
        assert truncated

    def test_oldest_turns_are_dropped_first(self):
        history = [_turn("user", str(index) * 2000) for index in range(4)]
        turns, truncated = bound_history(history)
        assert [turn["content"][0] for turn in turns] == ["1", "2", "3"]
        assert sum(len(turn["content"]) for turn in turns) <= 6000
        assert truncated


class TestSystemInstruction:
    def test_nothing_to_say(self):
        assert build_system_instruction("  ", None) == (None, False)

    def test_prompt_and_persona_are_combined(self):
        instruction, truncated = build_system_instruction("Be polite.", PERSONA)
        assert instruction.startswith("Be polite.\n\nYou are replying on WhatsApp as me")
        assert "User: can you check?\nMe: on it!" in instruction
        assert "- Stay punchy." in instruction
        assert not truncated

    def test_instruction_is_capped(self):
        instruction, truncated = build_system_instruction("x" * 5000, PERSONA)
        assert len(instruction) == 4000
        assert truncated

    def test_persona_prompt_without_profile(self):
        assert build_persona_prompt(None) == ""


class TestGenerateReply:
    @respx.mock
    async def test_sends_system_prompt_and_history(self):
        route = respx.post(COMPLETIONS).mock(return_value=httpx.Response(200, json=_completion("  See you at 5!  ")))
        config = make_config(system_prompt="Be polite.")

        reply = await LlmClient(base_url=LLM, timeout=5).generate_reply(
            config, [_turn("user", "are we still on?")], PERSONA
        )

        assert reply == "See you at 5!"
        request = route.calls.last.request
        assert request.headers["authorization"] == "Bearer test-api-key-123"
        body = json.loads(request.content)
        assert body["model"] == "gemini-test"
        assert body["messages"][0]["role"] == "system"
        assert body["messages"][1:] == [{"role": "user", "content": "are we still on?"}]

    async def test_missing_credentials_short_circuit(self):
        client = LlmClient(base_url=LLM, timeout=5)
        assert await client.generate_reply(make_config(api_key=""), [_turn("user", "hi")]) is None
        assert await client.generate_reply(make_config(), []) is None

    @pytest.mark.parametrize("status", [503, 429, 400])
    @respx.mock
    async def test_status_errors_carry_the_code(self, status):
        respx.post(COMPLETIONS).mock(return_value=httpx.Response(status, json={"error": {"message": "nope"}}))

        with pytest.raises(LlmError) as excinfo:
            await LlmClient(base_url=LLM, timeout=5).generate_reply(make_config(), [_turn("user", "hi")])

        assert excinfo.value.status_code == status
        assert excinfo.value.is_overload is (status == 503)

    @respx.mock
    async def test_timeout_means_no_reply(self):
        respx.post(COMPLETIONS).mock(side_effect=httpx.ReadTimeout("slow"))
        assert await LlmClient(base_url=LLM, timeout=5).generate_reply(make_config(), [_turn("user", "hi")]) is None

    @respx.mock
    async def test_unreachable_endpoint(self):
        respx.post(COMPLETIONS).mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(LlmError) as excinfo:
            await LlmClient(base_url=LLM, timeout=5).generate_reply(make_config(), [_turn("user", "hi")])
        assert excinfo.value.status_code == 502

    @respx.mock
    async def test_blank_completion_is_no_reply(self):
        respx.post(COMPLETIONS).mock(return_value=httpx.Response(200, json=_completion("   ")))
        assert await LlmClient(base_url=LLM, timeout=5).generate_reply(make_config(), [_turn("user", "hi")]) is None
