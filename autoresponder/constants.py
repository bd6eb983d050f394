# autoresponder/constants.py
"""
Shared limits and timings.

Durations are in seconds (asyncio / time.time() units).
"""

from __future__ import annotations

STOP_TIMEOUT_SECONDS = 24 * 60 * 60
MESSAGE_TIMESTAMP_TOLERANCE_SECONDS = 30
VOICE_MAX_AGE_SECONDS = 24 * 60 * 60
QR_REFRESH_INTERVAL_SECONDS = 30

DEFAULT_CONTEXT_WINDOW = 50
MIN_CONTEXT_WINDOW = 10
MAX_CONTEXT_WINDOW = 1000

MIN_SCHEDULE_DELAY_SECONDS = 10
MAX_SCHEDULE_DELAY_SECONDS = 7 * 24 * 60 * 60
SCHEDULE_RETRY_DELAY_SECONDS = 5

# Chat history ring
MAX_CHAT_HISTORIES_PER_SESSION = 50
CHAT_HISTORY_MAX_AGE_SECONDS = 24 * 60 * 60
CHAT_HISTORY_PRUNE_INTERVAL_SECONDS = 60 * 60

# Persistence
MAX_MESSAGES_PER_CONTACT = 1000
MAX_UNIVERSAL_MESSAGES = 1000
MAX_PERSISTED_MESSAGE_CHARS = 4000
FLUSH_INTERVAL_SECONDS = 30
MAX_TOTAL_BUFFER_SIZE = 10_000

# Persona
CONTACT_PERSONA_MIN_MESSAGES = 1000
CONTACT_PERSONA_MIN_EXAMPLES = 3
DEFAULT_EXAMPLE_LIMIT = 6
USER_MESSAGE_PREFIX = "User: "
HUMAN_REPLY_PREFIX = "My reply: "
AI_REPLY_PREFIX = "AI reply: "

# Session lifecycle
RECONNECT_DELAY_SECONDS = 2
SESSION_HEALTH_CHECK_INTERVAL_SECONDS = 5 * 60

# Reply pipeline
MIN_AUDIO_SIZE = 100
MEDIA_DOWNLOAD_ATTEMPTS = 3
MEDIA_DOWNLOAD_BASE_DELAY_SECONDS = 1.0
LLM_MAX_RETRIES = 2
LLM_RETRY_BASE_DELAY_SECONDS = 2.0
FRAGMENT_DELAY_SECONDS = 1.5
SINGLE_MESSAGE_MAX_CHARS = 60
LONG_SENTENCE_CHARS = 100
FRAGMENT_MAX_CHARS = 80

# Chat id markers for non-personal chats
GROUP_SUFFIX = "@g.us"
BROADCAST_MARKER = "@broadcast"
NEWSLETTER_MARKER = "@newsletter"
