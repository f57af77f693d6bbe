"""
Speech Queue — strictly serial, cancelable playback of synthesized utterances.

One worker task owns the foreground speaker. For each head item it fires
``on_start``, synthesizes, plays, removes the item and fires ``on_end``
with the outcome. Every synthesis/playback step runs as its own task so a
skip cancels exactly the in-flight work and nothing else.

Guarantees:
- FIFO order; ``on_end`` exactly once per item unless ``clear()`` hard-stops
- Skips resolve (outcome SKIPPED), never raise
- A failed item calls ``on_error`` once, degrades to a timed text-only
  pause, then still resolves
- ``wait_drained()`` completes exactly when the queue is empty AND idle
"""
from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from models.schemas import SpeakerRole
from voice.base import AudioOutput, SpeechSynthesizer, SynthesisError

logger = structlog.get_logger()


class UtteranceOutcome(str, Enum):
    PLAYED = "played"
    TEXT_ONLY = "text_only"       # no synthesizer/voice: timed pause instead
    SKIPPED = "skipped"
    FAILED = "failed"             # on_error fired, then timed pause
    TIMED_OUT = "timed_out"


@dataclass(frozen=True, eq=False)
class Utterance:
    """One queued unit of speech. Immutable once enqueued."""
    text: str
    speaker: SpeakerRole
    voice_ref: str = ""
    id: str = field(default_factory=lambda: f"utt_{uuid.uuid4().hex[:12]}")
    on_start: Optional[Callable[[], None]] = None
    on_end: Optional[Callable[[UtteranceOutcome], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None
    timeout_s: Optional[float] = None
    fallback_cap_ms: int = 1200


class _OpStatus(str, Enum):
    DONE = "done"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    FAILED = "failed"


class SpeechQueue:
    """
    Usage:
        queue = SpeechQueue(output, synthesizer)
        queue.enqueue_all([Utterance(...), Utterance(...)])
        await queue.wait_drained()
    """

    def __init__(
        self,
        output: AudioOutput,
        synthesizer: Optional[SpeechSynthesizer] = None,
        ms_per_char: int = 15,
    ):
        self._output = output
        self._synthesizer = synthesizer
        self._ms_per_char = ms_per_char

        self._items: deque[Utterance] = deque()
        self._current: Optional[Utterance] = None
        self._current_started: Optional[float] = None
        self._worker: Optional[asyncio.Task] = None
        self._op: Optional[asyncio.Task] = None
        self._skip_head = False
        self._drain_rest = False

        self._drained = asyncio.Event()
        self._drained.set()
        self._drain_listeners: list[Callable[[], None]] = []

    # ── State access ──────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._items)

    @property
    def pending(self) -> list[Utterance]:
        return list(self._items)

    @property
    def current(self) -> Optional[Utterance]:
        return self._current

    @property
    def current_elapsed_s(self) -> float:
        if self._current_started is None:
            return 0.0
        return time.monotonic() - self._current_started

    @property
    def is_speaking(self) -> bool:
        return self._current is not None

    @property
    def is_idle(self) -> bool:
        return not self._items and (self._worker is None or self._worker.done())

    def add_drain_listener(self, callback: Callable[[], None]) -> None:
        self._drain_listeners.append(callback)

    async def wait_drained(self) -> None:
        await self._drained.wait()

    # ── Enqueue ───────────────────────────────────────────────

    def enqueue(self, utterance: Utterance) -> None:
        self.enqueue_all([utterance])

    def enqueue_all(self, utterances: list[Utterance]) -> None:
        if not utterances:
            return
        self._items.extend(utterances)
        self._drained.clear()
        logger.debug("speech_enqueued", count=len(utterances), queue_length=len(self._items))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name="speech_queue_worker",
            )

    # ── Controls ──────────────────────────────────────────────

    def skip_current(self) -> bool:
        """Cancel the in-flight item only; its on_end still fires."""
        if self._op is not None and not self._op.done():
            self._op.cancel()
            logger.info("speech_skip_current", utterance_id=self._current.id if self._current else None)
            return True
        if self._items:
            # Worker scheduled but head not started yet
            self._skip_head = True
            return True
        return False

    def skip_to_end(self) -> None:
        """Cancel the in-flight item and resolve every queued item unplayed."""
        if self.is_idle:
            self._mark_drained()
            return
        self._drain_rest = True
        if self._op is not None and not self._op.done():
            self._op.cancel()
        logger.info("speech_skip_to_end", remaining=len(self._items))

    def clear(self) -> None:
        """Hard stop: cancel everything, drop the queue, fire no callbacks."""
        dropped = len(self._items)
        self._items.clear()
        if self._op is not None and not self._op.done():
            self._op.cancel()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
        self._worker = None
        self._op = None
        self._current = None
        self._current_started = None
        self._skip_head = False
        self._drain_rest = False
        if dropped:
            logger.info("speech_queue_cleared", dropped=dropped)
        self._mark_drained()

    # ── Worker ────────────────────────────────────────────────

    async def _run(self) -> None:
        try:
            while self._items:
                if self._drain_rest:
                    self._drain_remaining()
                    break
                item = self._items[0]
                self._current = item
                self._current_started = time.monotonic()
                outcome = await self._process(item)
                self._current = None
                self._current_started = None
                if self._items and self._items[0] is item:
                    self._items.popleft()
                self._fire_end(item, outcome)
            if self._drain_rest:
                self._drain_remaining()
        finally:
            if self._worker is asyncio.current_task():
                self._worker = None
                self._op = None
                self._current = None
                self._current_started = None
                if not self._items:
                    self._mark_drained()

    async def _process(self, item: Utterance) -> UtteranceOutcome:
        self._safe_call("on_start", item, item.on_start)

        if self._skip_head:
            self._skip_head = False
            return UtteranceOutcome.SKIPPED

        if self._synthesizer is None or not item.voice_ref:
            status, _ = await self._run_op(self._text_only_pause(item), item.timeout_s)
            return self._outcome_for(status, item, default=UtteranceOutcome.TEXT_ONLY)

        status, error = await self._run_op(self._speak(item), item.timeout_s)
        if status is _OpStatus.FAILED:
            logger.error(
                "speech_failed",
                utterance_id=item.id,
                speaker=item.speaker.value,
                error=str(error),
            )
            self._safe_call("on_error", item, item.on_error, error)
            # Text-only pause keeps display timing natural; skippable
            await self._run_op(self._text_only_pause(item), None)
            return UtteranceOutcome.FAILED
        return self._outcome_for(status, item, default=UtteranceOutcome.PLAYED)

    def _outcome_for(self, status: _OpStatus, item: Utterance, default: UtteranceOutcome) -> UtteranceOutcome:
        if status is _OpStatus.CANCELLED:
            return UtteranceOutcome.SKIPPED
        if status is _OpStatus.TIMEOUT:
            logger.warning("speech_timed_out", utterance_id=item.id, timeout_s=item.timeout_s)
            return UtteranceOutcome.TIMED_OUT
        return default

    async def _run_op(
        self, coro: Awaitable[Any], timeout: Optional[float],
    ) -> tuple[_OpStatus, Optional[BaseException]]:
        op = asyncio.ensure_future(coro)
        self._op = op
        try:
            done, _ = await asyncio.wait({op}, timeout=timeout)
        finally:
            if not op.done():
                op.cancel()
            self._op = None
        if not done:
            return _OpStatus.TIMEOUT, None
        if op.cancelled():
            return _OpStatus.CANCELLED, None
        error = op.exception()
        if error is not None:
            return _OpStatus.FAILED, error
        return _OpStatus.DONE, None

    async def _speak(self, item: Utterance) -> None:
        audio = await self._synthesizer.synthesize(item.voice_ref, item.text)
        if not audio:
            raise SynthesisError("Synthesizer returned no audio")
        await self._output.play(audio)

    async def _text_only_pause(self, item: Utterance) -> None:
        delay_ms = min(len(item.text) * self._ms_per_char, item.fallback_cap_ms)
        await asyncio.sleep(delay_ms / 1000)

    # ── Completion ────────────────────────────────────────────

    def _drain_remaining(self) -> None:
        while self._items:
            item = self._items.popleft()
            self._fire_end(item, UtteranceOutcome.SKIPPED)
        self._drain_rest = False

    def _fire_end(self, item: Utterance, outcome: UtteranceOutcome) -> None:
        logger.debug(
            "speech_utterance_ended",
            utterance_id=item.id,
            speaker=item.speaker.value,
            outcome=outcome.value,
        )
        self._safe_call("on_end", item, item.on_end, outcome)

    def _mark_drained(self) -> None:
        if self._drained.is_set():
            return
        self._drained.set()
        for listener in list(self._drain_listeners):
            try:
                listener()
            except Exception as e:
                logger.error("speech_drain_listener_failed", error=str(e), exc_info=True)

    @staticmethod
    def _safe_call(name: str, item: Utterance, callback: Optional[Callable], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(
                "speech_callback_failed",
                callback=name,
                utterance_id=item.id,
                error=str(e),
                exc_info=True,
            )
