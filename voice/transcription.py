"""
Transcription Session — streaming speech-to-text for the user's turn.

Keeps two views of what the user said:
- committed: append-only, deduplicated by ``text-timestamp``
- partial: the recognizer's current hypothesis, replaced on every update

``stop()`` commits whatever partial text is outstanding so nothing the
user already said is lost when the turn flips. A failed stream is torn
down and reported; calling ``start()`` again reconnects.
"""
from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, Callable, Optional

import structlog

from models.schemas import TranscriptSegment
from voice.base import TranscriptionAuthError, TranscriptionClient, TranscriptionError, VoiceError

logger = structlog.get_logger()

TranscriptListener = Callable[[str, str], None]


class TranscriptionSession:

    def __init__(
        self,
        client: TranscriptionClient,
        credentials_provider: Callable[[], Awaitable[str]],
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        self._client = client
        self._credentials_provider = credentials_provider
        self._on_error = on_error

        self._segments: list[str] = []
        self._seen: set[str] = set()
        self._partial = ""
        self._listeners: list[TranscriptListener] = []

        self._reader: Optional[asyncio.Task] = None
        self._active = False
        self._lock = asyncio.Lock()

    # ── Views ─────────────────────────────────────────────────

    @property
    def committed_text(self) -> str:
        return " ".join(self._segments)

    @property
    def partial_text(self) -> str:
        return self._partial

    @property
    def full_text(self) -> str:
        return " ".join(t for t in (self.committed_text, self._partial) if t)

    @property
    def is_active(self) -> bool:
        return self._active

    def subscribe(self, listener: TranscriptListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        async with self._lock:
            if self._active:
                if self._reader is not None and not self._reader.done():
                    return
                # Recognizer closed the stream on its own; reconnect
                self._active = False
                self._reader = None
                await self._disconnect()
            credentials = await self._credentials_provider()
            if not credentials:
                raise TranscriptionAuthError("No transcription credentials available")
            try:
                await self._client.connect(credentials)
            except VoiceError:
                raise
            except Exception as e:
                raise TranscriptionError(f"Recognizer connection failed: {e}") from e
            self._active = True
            self._reader = asyncio.get_running_loop().create_task(
                self._read(), name="transcription_reader",
            )
            logger.info("transcription_started")

    async def stop(self) -> None:
        async with self._lock:
            if not self._active:
                return
            self._active = False
            self._commit_partial()

            reader, self._reader = self._reader, None
            if reader is not None and not reader.done():
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader

            await self._disconnect()
            logger.info("transcription_stopped", committed_chars=len(self.committed_text))

    def clear(self) -> None:
        self._segments.clear()
        self._seen.clear()
        self._partial = ""
        self._notify()

    # ── Recognizer events ─────────────────────────────────────

    def handle_segment(self, segment: TranscriptSegment) -> None:
        if segment.is_final:
            text = segment.text.strip()
            key = segment.dedup_key
            if text and key not in self._seen:
                self._seen.add(key)
                self._segments.append(text)
            self._partial = ""
        else:
            self._partial = segment.text.strip()
        self._notify()

    async def _read(self) -> None:
        try:
            async for segment in self._client.events():
                self.handle_segment(segment)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("transcription_stream_failed", error=str(e))
            async with self._lock:
                # stop() may have taken over while this reader waited
                if self._reader is asyncio.current_task():
                    self._active = False
                    self._reader = None
                    self._commit_partial()
                    await self._disconnect()
            if self._on_error is not None:
                self._on_error(e if isinstance(e, TranscriptionError) else TranscriptionError(str(e)))

    async def _disconnect(self) -> None:
        try:
            await self._client.disconnect()
        except Exception as e:
            logger.warning("transcription_disconnect_failed", error=str(e))

    def _commit_partial(self) -> None:
        if not self._partial:
            return
        self._segments.append(self._partial)
        self._partial = ""
        self._notify()

    def _notify(self) -> None:
        committed, partial = self.committed_text, self._partial
        for listener in list(self._listeners):
            try:
                listener(committed, partial)
            except Exception as e:
                logger.error("transcript_listener_failed", error=str(e), exc_info=True)
