"""Reply fragmentation and outbound delivery."""

import re

from autoresponder.delivery import split_reply
from autoresponder.errors import SpeechError
from autoresponder.transport import TransportCapabilities

from .helpers import CONTACT, make_config


def _words(text):
    return re.sub(r"\s+", " ", text).strip()


class TestSplitReply:
    def test_short_reply_is_single_fragment(self):
        assert split_reply("  Sure, see you at 5!  ") == ["Sure, see you at 5!"]

    def test_empty_reply_has_no_fragments(self):
        assert split_reply("") == []
        assert split_reply("   ") == []
        assert split_reply(None) == []

    def test_long_reply_splits_on_sentences(self):
        text = "Thanks for reaching out. The shop opens at nine tomorrow. Do you want me to hold one for you?"
        assert split_reply(text) == [
            "Thanks for reaching out.",
            "The shop opens at nine tomorrow.",
            "Do you want me to hold one for you?",
        ]

    def test_trailing_text_without_punctuation_is_kept(self):
        text = "We close early on Fridays. Drop by before four and ask for Sam at the counter"
        fragments = split_reply(text)
        assert fragments[-1] == "Drop by before four and ask for Sam at the counter"

    def test_long_sentence_splits_on_clause_separators(self):
        text = (
            "I checked the order history for you, the parcel left our warehouse on Monday, "
            "and the courier says it should reach you by Thursday afternoon."
        )
        fragments = split_reply(text)
        assert len(fragments) > 1
        assert fragments[0] == "I checked the order history for you,"

    def test_long_sentence_without_separators_is_word_packed(self):
        text = " ".join(["word"] * 60) + "."
        fragments = split_reply(text)
        assert len(fragments) > 1
        assert all(len(fragment) <= 80 for fragment in fragments)

    def test_fragments_reconstruct_the_original_text(self):
        samples = [
            "Hello there! How are you doing today? I hope the move went well and the boxes are unpacked.",
            "First: pick a date; second: tell me the guest count, then I will send the quote - easy.",
            " ".join(["lorem ipsum dolor sit amet"] * 12),
            "Short one.",
        ]
        for text in samples:
            assert _words(" ".join(split_reply(text))) == _words(text)

    def test_fragments_stay_short(self):
        text = (
            "Our premium plan includes unlimited projects and priority support and a dedicated manager "
            "and quarterly reviews and custom onboarding for every new member of your team. "
            "Let me know if you want a demo."
        )
        for fragment in split_reply(text):
            assert len(fragment) <= 100

    def test_single_unsplittable_word_is_left_whole(self):
        token = "x" * 150
        assert split_reply(f"Here it is. {token}") == ["Here it is.", token]


class TestReplyDelivery:
    async def test_safe_reply_sends_text_with_quote(self, session, transport, delivery):
        assert await delivery.safe_reply(session, CONTACT, "hello", quoted_id="MSG1")
        assert transport.sent == [(CONTACT, "hello", "MSG1")]

    async def test_safe_reply_never_raises(self, session, transport, delivery):
        transport.fail_send_to.add(CONTACT)
        assert not await delivery.safe_reply(session, CONTACT, "hello")

    async def test_safe_reply_without_client(self, session, delivery):
        session.client = None
        assert not await delivery.safe_reply(session, CONTACT, "hello")

    async def test_fragments_are_paced(self, session, transport, delivery, sleeper):
        text = "Thanks for reaching out. The shop opens at nine tomorrow. Do you want me to hold one for you?"
        fragments = await delivery.send_fragmented_reply(session, CONTACT, text, quoted_id="MSG1")

        assert transport.texts == fragments
        assert len(fragments) == 3
        assert sleeper.delays == [1.5, 1.5]

    async def test_voice_reply_uses_tts(self, session, transport, delivery, speech):
        session.ai_config = make_config(voice_reply_enabled=True, text_to_speech_api_key="tts-key", voice_language="")
        assert await delivery.safe_reply(session, CONTACT, "नमस्ते दोस्त", as_voice=True)

        assert transport.sent == []
        assert len(transport.voice_notes) == 1
        assert speech.synthesized[0][2] == "hi-IN"

    async def test_voice_falls_back_to_text_when_tts_fails(self, session, transport, delivery, speech):
        session.ai_config = make_config(voice_reply_enabled=True, text_to_speech_api_key="tts-key")
        speech.audio = SpeechError("quota exceeded")

        assert await delivery.safe_reply(session, CONTACT, "hello", as_voice=True)
        assert transport.texts == ["hello"]
        assert transport.voice_notes == []

    async def test_voice_falls_back_on_tiny_audio(self, session, transport, delivery, speech):
        session.ai_config = make_config(voice_reply_enabled=True, text_to_speech_api_key="tts-key")
        speech.audio = b"\x00" * 10

        await delivery.safe_reply(session, CONTACT, "hello", as_voice=True)
        assert transport.texts == ["hello"]

    async def test_voice_requires_transport_capability(self, session, transport, delivery, speech):
        session.ai_config = make_config(voice_reply_enabled=True, text_to_speech_api_key="tts-key")
        session.capabilities = TransportCapabilities(supports_voice_notes=False)

        await delivery.safe_reply(session, CONTACT, "hello", as_voice=True)
        assert speech.synthesized == []
        assert transport.texts == ["hello"]

    async def test_mark_unread_is_capability_gated(self, session, transport, delivery):
        await delivery.mark_chat_unread(session, CONTACT)
        session.capabilities = TransportCapabilities(supports_mark_unread=False)
        await delivery.mark_chat_unread(session, CONTACT)
        assert transport.unread == [CONTACT]
