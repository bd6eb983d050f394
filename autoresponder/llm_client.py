# autoresponder/llm_client.py
"""
LLM client

Wraps the chat-completions call used to generate replies. We keep this layer
separate so you can:
- Swap providers (any OpenAI-compatible endpoint; Gemini's by default)
- Change the persona prompt
- Unit-test prompt bounding independently

Bounds applied to every request:
- system instruction (static prompt + persona prompt) <= 4000 chars
- each history turn <= 2000 chars (tail kept)
- whole history <= 6000 chars, most recent turns kept

Failures:
- timeout            -> None ("no reply")
- HTTP status error  -> LlmError(status_code)  (503 means overload)
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

import openai
from openai import AsyncOpenAI

from .config import settings
from .errors import LlmError
from .logging_config import get_logger, log_fields
from .persona_profiler import PersonaProfile
from .session_context import AiConfig, ChatHistoryEntry

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 2000
MAX_SYSTEM_PROMPT_CHARS = MAX_MESSAGE_LENGTH * 2
MAX_PROMPT_CHARS = 6000


def build_persona_prompt(profile: Optional[PersonaProfile]) -> str:
    if profile is None:
        return ""

    lines = [
        "You are replying on WhatsApp as me, the account owner.",
        f"Style profile: {profile.summary}",
    ]
    if profile.guidelines:
        lines.append("")
        lines.append("Guidelines:")
        lines.extend(f"- {guideline}" for guideline in profile.guidelines)

    if profile.examples:
        lines.append("")
        lines.append("Examples of how I reply (match the style, never copy the wording):")
        for index, example in enumerate(profile.examples, start=1):
            lines.append(f"Example {index}:")
            if example.user:
                lines.append(f"User: {example.user}")
            lines.append(f"Me: {example.reply}")
    return "\n".join(lines)


def build_system_instruction(
    system_prompt: Optional[str], profile: Optional[PersonaProfile]
) -> Tuple[Optional[str], bool]:
    """Returns (instruction, truncated)."""
    text = system_prompt.strip() if isinstance(system_prompt, str) else ""
    persona_text = build_persona_prompt(profile)
    if persona_text:
        text = f"{text}\n\n{persona_text}" if text else persona_text
    if not text:
        return None, False
    if len(text) > MAX_SYSTEM_PROMPT_CHARS:
        return text[:MAX_SYSTEM_PROMPT_CHARS], True
    return text, False


def bound_history(history: Sequence[Any]) -> Tuple[List[Dict[str, str]], bool]:
    """
    Clean and bound the conversation. Accepts ChatHistoryEntry objects or
    dicts with ``role`` / ``text``. Returns (turns, truncated).
    """
    cleaned: List[Dict[str, str]] = []
    truncated = False
    for entry in history or []:
        if entry is None:
            continue
        if isinstance(entry, dict):
            role, raw = entry.get("role"), entry.get("text")
        else:
            role, raw = getattr(entry, "role", None), getattr(entry, "text", None)
        text = raw.strip() if isinstance(raw, str) else ""
        if not text:
            continue
        if len(text) > MAX_MESSAGE_LENGTH:
            text = text[-MAX_MESSAGE_LENGTH:]
            truncated = True
        cleaned.append({"role": "assistant" if role == "assistant" else "user", "content": text})

    limited: List[Dict[str, str]] = []
    total = 0
    for turn in reversed(cleaned):
        length = len(turn["content"])
        if not total and length > MAX_PROMPT_CHARS:
            limited.append({**turn, "content": turn["content"][-MAX_PROMPT_CHARS:]})
            truncated = True
            break
        if total and total + length > MAX_PROMPT_CHARS:
            truncated = True
            continue
        limited.append(turn)
        total += length

    limited.reverse()
    return limited, truncated


class LlmClient:
    """
    Stateless: every call carries the session's own credentials, and the full
    persona context is sent each time (no provider-side caching).
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.base_url = base_url or settings.LLM_BASE_URL
        self.timeout = timeout or settings.AI_TIMEOUT_SECONDS

    async def generate_reply(
        self,
        config: AiConfig,
        history: Sequence[ChatHistoryEntry],
        persona: Optional[PersonaProfile] = None,
    ) -> Optional[str]:
        key = (config.api_key or "").strip()
        model = (config.model or "").strip()
        if not key or not model:
            return None

        turns, history_truncated = bound_history(history)
        if not turns:
            return None

        instruction, prompt_truncated = build_system_instruction(config.system_prompt, persona)
        if history_truncated or prompt_truncated:
            logger.debug(
                "LLM prompt truncated due to size",
                extra=log_fields(
                    promptTruncated=prompt_truncated,
                    historyTruncated=history_truncated,
                    messageCount=len(turns),
                ),
            )

        messages: List[Dict[str, str]] = []
        if instruction:
            messages.append({"role": "system", "content": instruction})
        messages.extend(turns)

        return await self._complete(key, model, messages)

    async def _complete(self, key: str, model: str, messages: List[Dict[str, str]]) -> Optional[str]:
        client = AsyncOpenAI(api_key=key, base_url=self.base_url, timeout=self.timeout, max_retries=0)
        try:
            completion = await client.chat.completions.create(model=model, messages=messages)
        except openai.APITimeoutError:
            logger.warning("LLM request timed out", extra=log_fields(model=model))
            return None
        except openai.APIStatusError as exc:
            if exc.status_code == 503:
                logger.warning("LLM overloaded - model unavailable", extra=log_fields(model=model))
            raise LlmError(
                f"LLM API responded with {exc.status_code}",
                status_code=exc.status_code,
                payload=getattr(exc, "body", None),
            ) from exc
        except openai.APIConnectionError as exc:
            raise LlmError(f"LLM API unreachable: {exc}", status_code=502) from exc
        finally:
            await client.close()

        try:
            content = completion.choices[0].message.content
        except (AttributeError, IndexError):
            return None
        if isinstance(content, str) and content.strip():
            return content.strip()
        return None
