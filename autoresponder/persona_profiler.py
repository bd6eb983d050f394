# autoresponder/persona_profiler.py
"""
Persona profiler.

Turns the operator's own historical replies into a style profile the LLM can
imitate:
- extract replies and (user -> reply) examples from a contact's message log
- compute simple reply statistics (length, emoji use, questions, slang, ...)
- map those statistics through fixed thresholds to a summary + guidelines

Only messages labelled as human replies are ever learned from. Rows labelled
as AI replies are skipped on purpose.

Nothing in here raises: bad input degrades to empty lists / the bootstrap
profile.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

import emoji

from .constants import DEFAULT_EXAMPLE_LIMIT, HUMAN_REPLY_PREFIX, USER_MESSAGE_PREFIX

PersonaSourceKind = Literal["contact", "universal", "bootstrap"]

STATS_SAMPLE_LIMIT = 200
MAX_PENDING_USER_MESSAGES = 3

SLANG_REGEX = re.compile(
    r"\b(?:lol|lmao|bro|dude|gonna|wanna|ya|yall|ain't|aint|tho|omg|wtf|idk|btw|brb|tbh|imo|nah|sup|hiya|yo)\b",
    re.IGNORECASE,
)
THANKS_REGEX = re.compile(r"\b(?:thanks?|appreciate|gracias|cheers)\b", re.IGNORECASE)
GREETING_REGEX = re.compile(r"^(hi|hey|hello|hola|yo|sup)\b", re.IGNORECASE)

BOOTSTRAP_SUMMARY = (
    "No owner-written replies captured yet. Default to a calm, friendly "
    "professional tone with one or two concise sentences."
)
BOOTSTRAP_GUIDELINES = [
    "Respond strictly as the human owner; never mention automation or AI.",
    "Keep messages short, factual, and focused on next steps.",
    "Ask for clarification whenever the request is vague or missing details.",
    "Use emojis only when the user does first or when you need extra warmth.",
    "Do not reuse wording from past chats; write original sentences.",
]


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------
@dataclass
class PersonaExample:
    reply: str
    user: Optional[str] = None


@dataclass
class PersonaProfile:
    source: PersonaSourceKind
    summary: str
    guidelines: List[str] = field(default_factory=list)
    examples: List[PersonaExample] = field(default_factory=list)


@dataclass
class PersonaExtraction:
    replies: List[str] = field(default_factory=list)
    examples: List[PersonaExample] = field(default_factory=list)


@dataclass
class ReplyStats:
    sample_size: int = 0
    avg_words: int = 0
    avg_chars: int = 0
    emoji_message_ratio: float = 0.0
    emoji_per_message: float = 0.0
    question_ratio: float = 0.0
    exclaim_ratio: float = 0.0
    slang_ratio: float = 0.0
    thanks_ratio: float = 0.0
    greeting_ratio: float = 0.0
    top_emojis: List[str] = field(default_factory=list)


def _clean(text: Any) -> str:
    return text.strip() if isinstance(text, str) else ""


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _record_text(record: Any) -> str:
    if isinstance(record, dict):
        return _clean(record.get("message"))
    return _clean(getattr(record, "message", record))


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------
def extract_contact_persona_data(
    messages: Any, example_limit: int = DEFAULT_EXAMPLE_LIMIT
) -> PersonaExtraction:
    """
    Scan the tail of a contact log (records with a ``message`` field).

    Up to three consecutive "User: " rows preceding a "My reply: " row are
    joined with " / " into the example's user side.
    """
    if not isinstance(messages, (list, tuple)) or not messages:
        return PersonaExtraction()

    window = max(example_limit * 6, 60)
    replies: List[str] = []
    examples: List[PersonaExample] = []
    pending_user: List[str] = []

    for record in list(messages)[-window:]:
        raw = _record_text(record)
        if not raw:
            continue

        if raw.startswith(USER_MESSAGE_PREFIX):
            user_text = _clean(raw[len(USER_MESSAGE_PREFIX):])
            if user_text:
                pending_user.append(user_text)
                if len(pending_user) > MAX_PENDING_USER_MESSAGES:
                    pending_user.pop(0)
            continue

        if raw.startswith(HUMAN_REPLY_PREFIX):
            reply_text = _clean(raw[len(HUMAN_REPLY_PREFIX):])
            if not reply_text:
                continue
            replies.append(reply_text)
            if pending_user:
                examples.append(PersonaExample(reply=reply_text, user=" / ".join(pending_user)))
                pending_user = []
            else:
                examples.append(PersonaExample(reply=reply_text))

    return PersonaExtraction(
        replies=replies[-STATS_SAMPLE_LIMIT:],
        examples=examples[-example_limit:] if example_limit > 0 else [],
    )


def build_standalone_examples(
    replies: Any, limit: int = DEFAULT_EXAMPLE_LIMIT
) -> List[PersonaExample]:
    if not isinstance(replies, (list, tuple)) or limit <= 0:
        return []
    cleaned = [text for text in (_clean(reply) for reply in replies) if text]
    return [PersonaExample(reply=text) for text in cleaned[-limit:]]


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------
def build_persona_profile(
    source: PersonaSourceKind,
    replies: Any,
    examples: Any,
    example_limit: int = DEFAULT_EXAMPLE_LIMIT,
) -> PersonaProfile:
    trimmed_replies = (
        [text for text in (_clean(reply) for reply in replies) if text]
        if isinstance(replies, (list, tuple))
        else []
    )

    trimmed_examples: List[PersonaExample] = []
    if isinstance(examples, (list, tuple)):
        for example in examples:
            if isinstance(example, PersonaExample):
                reply, user = _clean(example.reply), _clean(example.user)
            elif isinstance(example, dict):
                reply, user = _clean(example.get("reply")), _clean(example.get("user"))
            else:
                continue
            if reply:
                trimmed_examples.append(PersonaExample(reply=reply, user=user or None))
        trimmed_examples = trimmed_examples[-example_limit:] if example_limit > 0 else []

    if not trimmed_replies:
        return PersonaProfile(
            source="bootstrap",
            summary=BOOTSTRAP_SUMMARY,
            guidelines=list(BOOTSTRAP_GUIDELINES),
            examples=trimmed_examples,
        )

    stats = analyze_replies(trimmed_replies)
    return PersonaProfile(
        source=source,
        summary=compose_summary(stats),
        guidelines=compose_guidelines(stats),
        examples=trimmed_examples,
    )


def analyze_replies(replies: List[str]) -> ReplyStats:
    sample = replies[-STATS_SAMPLE_LIMIT:]
    size = len(sample)
    if not size:
        return ReplyStats()

    total_words = 0
    total_chars = 0
    emoji_messages = 0
    emoji_total = 0
    questions = exclaims = slang = thanks = greetings = 0
    emoji_counts: Counter = Counter()

    for reply in sample:
        total_words += len(reply.split())
        total_chars += len(reply)

        found = [item["emoji"] for item in emoji.emoji_list(reply)]
        if found:
            emoji_messages += 1
            emoji_total += len(found)
            emoji_counts.update(found)

        if "?" in reply:
            questions += 1
        if "!" in reply:
            exclaims += 1

        lower = reply.lower()
        if SLANG_REGEX.search(lower):
            slang += 1
        if THANKS_REGEX.search(lower):
            thanks += 1
        if GREETING_REGEX.search(lower.strip()):
            greetings += 1

    return ReplyStats(
        sample_size=size,
        avg_words=max(1, _round_half_up(total_words / size)),
        avg_chars=max(1, _round_half_up(total_chars / size)),
        emoji_message_ratio=emoji_messages / size,
        emoji_per_message=emoji_total / size,
        question_ratio=questions / size,
        exclaim_ratio=exclaims / size,
        slang_ratio=slang / size,
        thanks_ratio=thanks / size,
        greeting_ratio=greetings / size,
        top_emojis=[symbol for symbol, _ in emoji_counts.most_common(3)],
    )


def _format_emoji_list(symbols: List[str]) -> str:
    return ", ".join(symbols) if symbols else "select emojis"


def compose_summary(stats: ReplyStats) -> str:
    parts: List[str] = []

    if stats.avg_words <= 10:
        parts.append(f"Prefers crisp replies of roughly {stats.avg_words} words.")
    elif stats.avg_words <= 20:
        parts.append(f"Writes balanced answers (~{stats.avg_words} words) mixing warmth and direction.")
    else:
        parts.append(f"Usually sends detailed replies (~{stats.avg_words} words) with added context.")

    if stats.emoji_message_ratio >= 0.6:
        parts.append(
            f"Uses emojis in most messages ({_format_emoji_list(stats.top_emojis)}); "
            "match that energy without overusing them."
        )
    elif stats.emoji_message_ratio >= 0.3:
        parts.append(f"Sprinkles emojis occasionally ({_format_emoji_list(stats.top_emojis)}) when warmth helps.")
    else:
        parts.append("Rarely adds emojis, so keep text clean unless the user adds one first.")

    if stats.question_ratio >= 0.35:
        parts.append("Often ends with a question or prompt to keep the chat moving.")
    else:
        parts.append("Leans on confident statements more than back-to-back questions.")

    if stats.exclaim_ratio >= 0.4:
        parts.append("Tone is upbeat with frequent exclamation marks - keep it enthusiastic when appropriate.")
    else:
        parts.append("Tone stays measured; exclamation marks are used sparingly.")

    if stats.slang_ratio >= 0.25:
        parts.append("Comfortable using casual slang and shorthand when the relationship allows.")
    else:
        parts.append("Prefers clear, professional wording over heavy slang.")

    if stats.thanks_ratio >= 0.25:
        parts.append("Often closes with gratitude or encouragement.")
    if stats.greeting_ratio >= 0.25:
        parts.append("Frequently starts with a light greeting before addressing the ask.")

    return " ".join(parts)


def compose_guidelines(stats: ReplyStats) -> List[str]:
    guidelines = [
        "Act as the human account owner; never mention automation or AI.",
        "Mirror the tone described in the style profile without copying sentences from history.",
    ]

    if stats.avg_words <= 12:
        guidelines.append("Stay punchy: one or two short sentences are enough.")
    elif stats.avg_words >= 30:
        guidelines.append("Offer fuller replies (2-3 sentences) with concrete next steps.")
    else:
        guidelines.append("Keep responses to about two sentences mixing empathy with direction.")

    if stats.emoji_message_ratio >= 0.5:
        guidelines.append("Include at most one emoji when it adds warmth; skip them if the conversation is serious.")
    else:
        guidelines.append("Only add an emoji when the user uses one first or when extra warmth is needed.")

    if stats.question_ratio >= 0.35:
        guidelines.append("End with a clarifying or forward-looking question when it keeps momentum.")
    else:
        guidelines.append("Close with a confident statement unless you truly need more info.")

    if stats.slang_ratio >= 0.25:
        guidelines.append("Casual slang is fine, keep it respectful and modern.")
    else:
        guidelines.append("Favor clear, professional wording over slang.")

    guidelines.append("If details are missing, ask for them instead of guessing or inventing capabilities.")
    return guidelines


def profile_to_dict(profile: PersonaProfile) -> Dict[str, Any]:
    return {
        "source": profile.source,
        "summary": profile.summary,
        "guidelines": list(profile.guidelines),
        "examples": [
            {"user": example.user, "reply": example.reply} if example.user else {"reply": example.reply}
            for example in profile.examples
        ],
    }
