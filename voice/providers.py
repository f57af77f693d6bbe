"""
Voice Providers — ElevenLabs adapters for the foreground speech path and
the realtime recognizer.

TTS:    streaming text-to-speech over HTTP (httpx), raw PCM output
Token:  single-use realtime-scribe token, so the long-lived API key
        never travels over the recognizer socket
STT:    Scribe realtime WebSocket (websockets) fed with base64 PCM
        microphone chunks; partial / committed messages become
        TranscriptSegments

Synthesis is never retried: a failed request degrades the utterance to
text-only inside the SpeechQueue. Token auth failures are fatal to the
listening phase and surface immediately.
"""
from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import time
from typing import Any, AsyncIterator, Optional
from urllib.parse import urlencode

import httpx
import structlog
import websockets

from config.settings import ElevenLabsConfig
from models.schemas import TranscriptSegment
from voice.base import (
    AudioInput,
    SpeechSynthesizer,
    SynthesisError,
    TranscriptionAuthError,
    TranscriptionClient,
    TranscriptionError,
)

logger = structlog.get_logger()

SCRIBE_REALTIME_URL = "wss://api.elevenlabs.io/v1/speech-to-text/realtime"

DEFAULT_VOICE_SETTINGS: dict[str, Any] = {
    "stability": 0.5,
    "similarity_boost": 0.75,
    "style": 0.0,
    "use_speaker_boost": True,
}


# ══════════════════════════════════════════════════════════════
#  TEXT-TO-SPEECH
# ══════════════════════════════════════════════════════════════

class ElevenLabsSpeechSynthesizer(SpeechSynthesizer):
    """
    Streams synthesized audio and returns it once complete.
    Cancelling the awaiting task aborts the HTTP stream.
    """

    def __init__(self, config: ElevenLabsConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={"xi-api-key": self.config.api_key},
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        return self.client

    async def synthesize(self, voice_ref: str, text: str) -> bytes:
        if not self.config.api_key:
            raise SynthesisError("ElevenLabs API key is not configured", status_code=401)

        client = await self._get_client()
        payload = {
            "text": text,
            "model_id": self.config.model_id,
            "voice_settings": DEFAULT_VOICE_SETTINGS,
        }
        started = time.monotonic()
        chunks: list[bytes] = []
        try:
            async with client.stream(
                "POST",
                f"/v1/text-to-speech/{voice_ref}/stream",
                params={"output_format": self.config.output_format},
                json=payload,
            ) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise SynthesisError(
                        f"TTS request failed: HTTP {response.status_code}: {body[:200]!r}",
                        status_code=response.status_code,
                    )
                async for chunk in response.aiter_bytes():
                    chunks.append(chunk)
        except httpx.HTTPError as e:
            raise SynthesisError(f"TTS transport error: {e}") from e

        audio = b"".join(chunks)
        logger.debug(
            "tts_synthesized",
            voice=voice_ref,
            chars=len(text),
            audio_bytes=len(audio),
            latency_ms=int((time.monotonic() - started) * 1000),
        )
        return audio

    async def close(self):
        if self.client:
            await self.client.aclose()


# ══════════════════════════════════════════════════════════════
#  REALTIME TOKEN
# ══════════════════════════════════════════════════════════════

async def fetch_scribe_token(
    api_key: str,
    base_url: str = "https://api.elevenlabs.io",
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """Exchange the API key for a single-use realtime-scribe token."""
    if not api_key:
        raise TranscriptionAuthError("ElevenLabs API key is required")

    owns_client = client is None
    client = client or httpx.AsyncClient(base_url=base_url, timeout=15.0)
    try:
        response = await client.post(
            "/v1/single-use-token/realtime_scribe",
            headers={"xi-api-key": api_key, "Content-Type": "application/json"},
        )
    except httpx.HTTPError as e:
        raise TranscriptionError(f"Token request failed: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code in (401, 403):
        raise TranscriptionAuthError(f"Token request rejected: HTTP {response.status_code}")
    if response.status_code >= 400:
        try:
            detail = response.json()
        except ValueError:
            detail = {}
        message = detail.get("detail") or detail.get("message") or f"HTTP {response.status_code}"
        raise TranscriptionError(f"Failed to fetch token: {message}")

    token = response.json().get("token")
    if not token:
        raise TranscriptionError("No token received from API")
    logger.debug("scribe_token_fetched")
    return token


class ScribeTokenProvider:
    """Credentials provider for TranscriptionSession."""

    def __init__(self, config: ElevenLabsConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client

    async def __call__(self) -> str:
        return await fetch_scribe_token(self.config.api_key, self.config.base_url, self.client)


# ══════════════════════════════════════════════════════════════
#  REALTIME SPEECH-TO-TEXT
# ══════════════════════════════════════════════════════════════

_AUTH_ERRORS = {"auth_error", "unauthorized", "invalid_token"}
_PROTOCOL_ERRORS = {"error", "input_error", "quota_exceeded", "rate_limited", "transcriber_error"}


def parse_scribe_message(data: dict[str, Any], include_timestamps: bool = True) -> Optional[TranscriptSegment]:
    """Map one recognizer message to a segment; None for control messages."""
    kind = data.get("message_type", "")

    if kind == "partial_transcript":
        return TranscriptSegment(text=data.get("text", ""), is_final=False)

    committed_kind = (
        "committed_transcript_with_timestamps" if include_timestamps else "committed_transcript"
    )
    if kind == committed_kind:
        words = data.get("words") or []
        start = words[0].get("start") if words else None
        return TranscriptSegment(
            text=data.get("text", ""),
            is_final=True,
            timestamp=start if start is not None else time.time(),
        )

    if kind in _AUTH_ERRORS:
        raise TranscriptionAuthError(data.get("error") or data.get("message") or kind)
    if kind in _PROTOCOL_ERRORS:
        raise TranscriptionError(data.get("error") or data.get("message") or kind)
    return None


class ScribeRealtimeClient(TranscriptionClient):
    """
    Usage:
        client = ScribeRealtimeClient(MicrophoneInput(), settings.elevenlabs)
        await client.connect(token)
        async for segment in client.events():
            ...
        await client.disconnect()
    """

    def __init__(
        self,
        audio_input: AudioInput,
        config: ElevenLabsConfig,
        url: str = SCRIBE_REALTIME_URL,
        vad_silence_threshold_s: float = 1.0,
        include_timestamps: bool = True,
    ):
        self.audio_input = audio_input
        self.config = config
        self.url = url
        self.vad_silence_threshold_s = vad_silence_threshold_s
        self.include_timestamps = include_timestamps
        self._ws = None
        self._send_task: Optional[asyncio.Task] = None

    def _build_url(self, token: str) -> str:
        params = {
            "model_id": self.config.scribe_model_id,
            "token": token,
            "language_code": self.config.language_code,
            "audio_format": f"pcm_{self.config.sample_rate}",
            "commit_strategy": "vad",
            "vad_silence_threshold_secs": self.vad_silence_threshold_s,
            "include_timestamps": str(self.include_timestamps).lower(),
        }
        return f"{self.url}?{urlencode(params)}"

    async def connect(self, credentials: str) -> None:
        try:
            self._ws = await websockets.connect(
                self._build_url(credentials), ping_interval=20, ping_timeout=10,
            )
        except websockets.exceptions.WebSocketException as e:
            raise TranscriptionError(f"Recognizer connection failed: {e}") from e
        self._send_task = asyncio.get_running_loop().create_task(
            self._send_audio(), name="scribe_audio_sender",
        )
        logger.info("scribe_connected", model=self.config.scribe_model_id)

    async def events(self) -> AsyncIterator[TranscriptSegment]:
        if self._ws is None:
            raise TranscriptionError("Recognizer is not connected")
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("scribe_invalid_message", size=len(message))
                    continue
                segment = parse_scribe_message(data, self.include_timestamps)
                if segment is not None:
                    yield segment
        except websockets.exceptions.ConnectionClosedError as e:
            raise TranscriptionError(f"Recognizer connection lost: {e}") from e

    async def disconnect(self) -> None:
        task, self._send_task = self._send_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
            logger.info("scribe_disconnected")

    async def _send_audio(self) -> None:
        try:
            async for chunk in self.audio_input.chunks():
                if self._ws is None:
                    break
                await self._ws.send(json.dumps({
                    "message_type": "input_audio_chunk",
                    "audio_base_64": base64.b64encode(chunk).decode(),
                    "commit": False,
                    "sample_rate": self.config.sample_rate,
                }))
        except websockets.exceptions.ConnectionClosed:
            logger.info("scribe_sender_closed")
