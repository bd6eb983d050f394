# autoresponder/speech.py
"""
Speech Gateway

Google Cloud Speech-to-Text and Text-to-Speech over their API-key REST
endpoints:
- transcribe_audio: OGG/OPUS voice note -> text ("" when nothing was heard)
- synthesize_speech: text -> OGG/OPUS audio bytes

WhatsApp voice notes are usually 48 kHz, but not always, so recognition is
attempted at each candidate sample rate until one returns alternatives.
"""

from __future__ import annotations

import base64
import re
from typing import Any, Dict, List, Optional

import httpx

from .config import settings
from .errors import SpeechError
from .logging_config import get_logger, log_fields

logger = get_logger(__name__)

SAMPLE_RATES = [48000, 24000, 16000, 12000, 8000]

DEVANAGARI_OR_ARABIC = re.compile(r"[\u0900-\u097F\u0600-\u06FF]")


def pick_voice_language(text: str, configured: Optional[str]) -> str:
    """
    Use the configured language; without one, Devanagari / Arabic script
    text is voiced as hi-IN, anything else as en-US.
    """
    if configured:
        return configured
    if DEVANAGARI_OR_ARABIC.search(text or ""):
        return "hi-IN"
    return "en-US"


def _error_message(resp: httpx.Response) -> str:
    try:
        return str(((resp.json() or {}).get("error") or {}).get("message") or resp.text)
    except ValueError:
        return resp.text


class SpeechGateway:
    def __init__(
        self,
        speech_url: Optional[str] = None,
        tts_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.speech_url = (speech_url or settings.SPEECH_BASE_URL).rstrip("/")
        self.tts_url = (tts_url or settings.TTS_BASE_URL).rstrip("/")
        self.timeout = timeout

    async def transcribe_audio(self, audio: bytes, api_key: str, language: str = "en-US") -> str:
        """
        Raises SpeechError for missing input, rejected credentials or quota
        problems. Everything else degrades to "".
        """
        if not audio or not api_key:
            raise SpeechError("Audio buffer and API key are required")

        content = base64.b64encode(audio).decode("ascii")
        url = f"{self.speech_url}/v1/speech:recognize"
        last_error: Optional[str] = None

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for rate in SAMPLE_RATES:
                body = {
                    "config": {
                        "encoding": "OGG_OPUS",
                        "languageCode": language or "en-US",
                        "enableAutomaticPunctuation": True,
                        "audioChannelCount": 1,
                        "sampleRateHertz": rate,
                    },
                    "audio": {"content": content},
                }
                try:
                    resp = await client.post(url, params={"key": api_key}, json=body)
                except httpx.HTTPError as exc:
                    raise SpeechError(f"Speech-to-Text error: {exc}") from exc

                if resp.status_code in (401, 403) or (
                    resp.status_code == 400 and "api key" in _error_message(resp).lower()
                ):
                    raise SpeechError(f"Speech-to-Text error: {_error_message(resp)}", status_code=resp.status_code)
                if resp.status_code == 429:
                    raise SpeechError("Speech-to-Text error: quota exceeded", status_code=429)
                if resp.is_error:
                    last_error = _error_message(resp)
                    logger.warning(
                        "Transcription attempt failed, trying next rate",
                        extra=log_fields(rate=rate, status=resp.status_code),
                    )
                    continue

                transcript = self._join_results(resp.json())
                if transcript:
                    logger.info(
                        "Audio transcription completed",
                        extra=log_fields(rate=rate, transcriptionLength=len(transcript)),
                    )
                    return transcript
                logger.debug("Transcription returned no results", extra=log_fields(rate=rate))

        logger.warning(
            "No transcription at any sample rate",
            extra=log_fields(audioSize=len(audio), lastError=last_error),
        )
        return ""

    @staticmethod
    def _join_results(data: Dict[str, Any]) -> str:
        parts: List[str] = []
        for result in (data or {}).get("results") or []:
            alternatives = result.get("alternatives") or []
            if alternatives:
                text = (alternatives[0].get("transcript") or "").strip()
                if text:
                    parts.append(text)
        return "\n".join(parts).strip()

    async def synthesize_speech(
        self,
        text: str,
        api_key: str,
        language: str = "en-US",
        gender: str = "NEUTRAL",
    ) -> bytes:
        if not text or not api_key:
            raise SpeechError("Text and API key are required")

        body = {
            "input": {"text": text},
            "voice": {"languageCode": language, "ssmlGender": gender or "NEUTRAL"},
            "audioConfig": {"audioEncoding": "OGG_OPUS", "speakingRate": 1.0, "pitch": 0.0},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.tts_url}/v1/text:synthesize", params={"key": api_key}, json=body)
        except httpx.HTTPError as exc:
            raise SpeechError(f"Text-to-Speech error: {exc}") from exc

        if resp.is_error:
            raise SpeechError(f"Text-to-Speech error: {_error_message(resp)}", status_code=resp.status_code)

        encoded = (resp.json() or {}).get("audioContent")
        if not encoded:
            raise SpeechError("No audio content returned from Text-to-Speech API")
        return base64.b64decode(encoded)
