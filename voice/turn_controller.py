"""
Turn Controller — owns the conversation state machine.

    USER_LISTENING ──submit──▶ AI_THINKING ──response──▶ AI_SPEAKING_THOUGHTS
          ▲                                                   │ drained
          │                                                   ▼
          └──────────── end_ai_turn ◀────────────── AI_SPEAKING_RESPONSE

The controller is the single writer of ``SessionContext.state`` and the
single place that decides what the user sees as an error. Ownership flips
back to the user only after every foreground utterance has resolved
(``SpeechQueue.wait_drained``), and there is exactly one finalization
path: ``end_ai_turn``, guarded by a per-turn ``finished`` flag so normal
completion, skips and guard expiry can all race into it safely.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from config.settings import TurnConfig, VoicesConfig
from models.schemas import (
    AgentThought,
    DialogEntry,
    DialogEntryType,
    SpeakerRole,
    TurnState,
)
from voice.ambient import AmbientAudioMixer, ThinkingCue
from voice.base import ResponseGenerationError, ResponseGenerator, TurnStateError
from voice.context import SessionContext
from voice.skip import SkipController
from voice.speech_queue import SpeechQueue, Utterance, UtteranceOutcome
from voice.submit_detection import SubmitDetector, clean_submit_text
from voice.transcription import TranscriptionSession

logger = structlog.get_logger()


class TurnEventType(str, Enum):
    STATE_CHANGED = "state_changed"
    UTTERANCE_STARTED = "utterance_started"
    UTTERANCE_ENDED = "utterance_ended"
    UTTERANCE_FAILED = "utterance_failed"
    DIALOG_APPENDED = "dialog_appended"
    TRANSCRIPT_UPDATED = "transcript_updated"
    ERROR = "error"


@dataclass(frozen=True)
class TurnEvent:
    type: TurnEventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "data": self.data, "timestamp": self.timestamp}


TurnListener = Callable[[TurnEvent], None]
DialogHook = Callable[[DialogEntry], None]


@dataclass
class _AiTurn:
    index: int
    thoughts: list[AgentThought] = field(default_factory=list)
    response: str = ""
    finished: bool = False


class TurnController:
    """
    Usage:
        controller = TurnController(context, queue, transcription, skip, generator, voices)
        controller.subscribe(on_event)
        await controller.start_session()
        ...
        await controller.end_session()
    """

    def __init__(
        self,
        context: SessionContext,
        queue: SpeechQueue,
        transcription: TranscriptionSession,
        skip: SkipController,
        generator: ResponseGenerator,
        voices: VoicesConfig,
        turn_config: Optional[TurnConfig] = None,
        thinking: Optional[ThinkingCue] = None,
        ambient: Optional[AmbientAudioMixer] = None,
        on_dialog_entry: Optional[DialogHook] = None,
    ):
        self._context = context
        self._queue = queue
        self._transcription = transcription
        self._skip = skip
        self._generator = generator
        self._voices = voices
        self._config = turn_config or TurnConfig()
        self._thinking = thinking
        self._ambient = ambient
        self._on_dialog_entry = on_dialog_entry

        self.detector = SubmitDetector(
            self._on_submit_detected, debounce_ms=self._config.submit_debounce_ms,
        )
        self.detector.disable()

        self._listeners: list[TurnListener] = []
        self._turn: Optional[_AiTurn] = None
        self._turn_task: Optional[asyncio.Task] = None

        self._skip.bind_finisher(self.end_ai_turn)
        self._transcription.subscribe(self._on_transcript)

    # ── Observation ───────────────────────────────────────────

    @property
    def state(self) -> TurnState:
        return self._context.state

    @property
    def context(self) -> SessionContext:
        return self._context

    def subscribe(self, listener: TurnListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    async def wait_for_turn(self) -> None:
        """Wait for the in-flight AI turn task, if any."""
        task = self._turn_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    # ══════════════════════════════════════════════════════════
    #  SESSION LIFECYCLE
    # ══════════════════════════════════════════════════════════

    async def start_session(self) -> None:
        """Open the conversation and speak the Governor's opener. Idempotent."""
        if self._context.state != TurnState.IDLE:
            return
        self._set_state(TurnState.AI_THINKING)

        try:
            session_id = await self._generator.create_session()
            self._context.session_id = session_id
            opener = await self._generator.get_opener(session_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._surface_error(e, "session_start_failed")
            await self._enter_listening()
            return

        logger.info("voice_session_started", session_id=self._context.session_id, has_opener=bool(opener))
        if self._context.state == TurnState.ENDED:
            return
        if not opener:
            await self._enter_listening()
            return

        turn = self._open_turn()
        turn.response = opener
        self._context.pending_response = opener
        await self._speak_response(turn)
        await self.end_ai_turn()

    async def end_session(self) -> None:
        if self._context.state == TurnState.ENDED:
            return
        self._set_state(TurnState.ENDED)
        # Abandon the turn before waking anything blocked on the queue
        if self._turn is not None:
            self._turn.finished = True
            self._turn = None
        self.detector.disable()

        task, self._turn_task = self._turn_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._queue.clear()
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

        if self._thinking is not None:
            self._thinking.stop_all()
        if self._ambient is not None:
            self._ambient.stop()
        await self._transcription.stop()
        logger.info(
            "voice_session_ended",
            session_id=self._context.session_id,
            dialog_entries=len(self._context.dialog),
        )

    # ══════════════════════════════════════════════════════════
    #  USER TURN → AI TURN
    # ══════════════════════════════════════════════════════════

    def submit_user_text(self, text: str) -> bool:
        """Hand the user's turn to the AI. Returns False when ignored."""
        if self._context.state != TurnState.USER_LISTENING:
            logger.debug("submit_ignored", state=self._context.state.value)
            return False
        if self._turn_task is not None and not self._turn_task.done():
            return False
        cleaned = clean_submit_text(text)
        if not cleaned:
            logger.debug("submit_ignored_empty")
            return False
        self._turn_task = asyncio.get_running_loop().create_task(
            self.begin_ai_turn(cleaned), name="ai_turn",
        )
        return True

    async def begin_ai_turn(self, user_text: str) -> None:
        if self._context.state != TurnState.USER_LISTENING:
            raise TurnStateError(f"Cannot begin an AI turn from {self._context.state.value}")
        text = user_text.strip()
        if not text:
            raise ValueError("user_text must not be empty")

        self.detector.disable()
        await self._transcription.stop()
        if self._context.state == TurnState.ENDED:
            return
        self._transcription.clear()
        self._skip.reset()
        self._append_entry(DialogEntry(type=DialogEntryType.USER, content=text))

        turn = self._open_turn()
        self._set_state(TurnState.AI_THINKING)
        if self._thinking is not None:
            await self._thinking.start_loop()
        if turn.finished:
            if self._thinking is not None:
                self._thinking.stop_all()
            return

        try:
            response = await self._generator.generate_turn_response(self._context.session_id, text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._thinking is not None:
                self._thinking.stop_loop()
            if turn.finished:
                return
            self._turn = None
            self._context.clear_turn()
            error = e if isinstance(e, ResponseGenerationError) else ResponseGenerationError(str(e))
            self._surface_error(error, "turn_response_failed")
            await self._enter_listening()
            return

        if turn.finished or self._context.state == TurnState.ENDED:
            return

        turn.thoughts = list(response.thoughts)
        turn.response = response.final_response
        self._context.current_thoughts = list(turn.thoughts)
        self._context.pending_response = turn.response
        logger.info(
            "ai_turn_response_received",
            session_id=self._context.session_id,
            turn=turn.index,
            thoughts=len(turn.thoughts),
            has_response=bool(turn.response),
        )

        if turn.thoughts and not self._skip.skip_to_end_requested:
            self._set_state(TurnState.AI_SPEAKING_THOUGHTS)
            self._enqueue_thoughts(turn)
            guard = self._config.thought_timeout_s * len(turn.thoughts) + self._config.turn_guard_grace_s
            await self._wait_drained(guard, turn)

        if turn.finished:
            return
        if turn.response:
            await self._speak_response(turn)
            if turn.finished:
                return
        await self.end_ai_turn()

    async def end_ai_turn(self) -> None:
        """Finalize the AI turn and give the floor back. Idempotent."""
        turn = self._turn
        if turn is None or turn.finished:
            return
        turn.finished = True

        if not self._queue.is_idle:
            self._queue.clear()
        if self._thinking is not None:
            self._thinking.stop_loop()

        for thought in turn.thoughts:
            self._append_entry(DialogEntry(
                type=DialogEntryType.THOUGHT, content=thought.text, speaker=thought.speaker,
            ))
        if turn.response:
            self._append_entry(DialogEntry(
                type=DialogEntryType.RESPONSE, content=turn.response, speaker=SpeakerRole.GOVERNOR,
            ))

        self._turn = None
        self._context.clear_turn()
        self._skip.reset()
        logger.info("ai_turn_finished", session_id=self._context.session_id, turn=turn.index)
        await self._enter_listening()

    def report_error(self, error: Exception) -> None:
        """Surface a collaborator failure that happened outside a turn step."""
        self._surface_error(error, "collaborator_failed")

    async def restart_transcription(self) -> bool:
        """Reconnect the recognizer while the user holds the floor."""
        if self._context.state != TurnState.USER_LISTENING:
            return False
        try:
            await self._transcription.start()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._surface_error(e, "transcription_restart_failed")
            return False
        self._context.last_error = None
        return self._transcription.is_active

    # ══════════════════════════════════════════════════════════
    #  SPEECH
    # ══════════════════════════════════════════════════════════

    def _enqueue_thoughts(self, turn: _AiTurn) -> None:
        last = len(turn.thoughts) - 1
        utterances = [
            self._make_utterance(
                thought.speaker,
                thought.text,
                timeout_s=self._config.thought_timeout_s,
                fallback_cap_ms=self._config.thought_fallback_cap_ms,
                first=i == 0,
                cue_after=i < last,
            )
            for i, thought in enumerate(turn.thoughts)
        ]
        self._queue.enqueue_all(utterances)

    async def _speak_response(self, turn: _AiTurn) -> None:
        if turn.finished:
            return
        self._set_state(TurnState.AI_SPEAKING_RESPONSE)
        self._queue.enqueue(self._make_utterance(
            SpeakerRole.GOVERNOR,
            turn.response,
            timeout_s=self._config.response_timeout_s,
            fallback_cap_ms=self._config.response_fallback_cap_ms,
            first=True,
            cue_after=False,
        ))
        await self._wait_drained(self._config.response_timeout_s + self._config.turn_guard_grace_s, turn)

    def _make_utterance(
        self,
        speaker: SpeakerRole,
        text: str,
        timeout_s: float,
        fallback_cap_ms: int,
        first: bool,
        cue_after: bool,
    ) -> Utterance:
        utterance_id = f"utt_{uuid.uuid4().hex[:12]}"

        def on_start() -> None:
            if first and self._thinking is not None:
                self._thinking.stop_loop()
            self._context.active_text = text
            self._context.active_speaker = speaker
            self._emit(TurnEventType.UTTERANCE_STARTED, utterance_id=utterance_id,
                       speaker=speaker.value, text=text)

        def on_end(outcome: UtteranceOutcome) -> None:
            self._context.active_text = ""
            self._context.active_speaker = None
            self._emit(TurnEventType.UTTERANCE_ENDED, utterance_id=utterance_id,
                       speaker=speaker.value, outcome=outcome.value)
            if (cue_after and self._thinking is not None
                    and not self._skip.skip_to_end_requested):
                self._thinking.play_brief()

        def on_error(error: Exception) -> None:
            logger.warning(
                "utterance_degraded_to_text",
                session_id=self._context.session_id,
                utterance_id=utterance_id,
                speaker=speaker.value,
                error=str(error),
            )
            self._emit(TurnEventType.UTTERANCE_FAILED, utterance_id=utterance_id,
                       speaker=speaker.value, error=str(error))

        return Utterance(
            id=utterance_id,
            text=text,
            speaker=speaker,
            voice_ref=self._voices.voice_for(speaker),
            on_start=on_start,
            on_end=on_end,
            on_error=on_error,
            timeout_s=timeout_s,
            fallback_cap_ms=fallback_cap_ms,
        )

    async def _wait_drained(self, guard_s: float, turn: _AiTurn) -> None:
        try:
            await asyncio.wait_for(self._queue.wait_drained(), timeout=guard_s)
        except asyncio.TimeoutError:
            logger.warning(
                "turn_guard_expired",
                session_id=self._context.session_id,
                turn=turn.index,
                guard_s=guard_s,
            )
            self._queue.clear()

    # ══════════════════════════════════════════════════════════
    #  LISTENING
    # ══════════════════════════════════════════════════════════

    async def _enter_listening(self) -> None:
        if self._context.state == TurnState.ENDED:
            return
        await self._queue.wait_drained()
        if self._context.state == TurnState.ENDED:
            return
        self._set_state(TurnState.USER_LISTENING)
        self.detector.reset()
        self.detector.enable()
        try:
            await self._transcription.start()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._surface_error(e, "transcription_start_failed")

    def _on_transcript(self, committed: str, partial: str) -> None:
        self._emit(TurnEventType.TRANSCRIPT_UPDATED, committed=committed, partial=partial)
        if self._context.state == TurnState.USER_LISTENING:
            self.detector.process(committed, partial)

    def _on_submit_detected(self, text: str) -> None:
        if not self.submit_user_text(text):
            # Nothing usable was said before "submit": keep listening
            self.detector.reset()

    # ── Internals ─────────────────────────────────────────────

    def _open_turn(self) -> _AiTurn:
        self._context.turn_index += 1
        self._context.clear_turn()
        self._turn = _AiTurn(index=self._context.turn_index)
        return self._turn

    def _set_state(self, state: TurnState) -> None:
        previous = self._context.state
        if previous == state:
            return
        if previous == TurnState.ENDED:
            # Terminal: a turn step that outlived end_session must not revive it
            logger.debug("turn_state_change_refused", session_id=self._context.session_id,
                         to_state=state.value)
            return
        self._context.state = state
        logger.info(
            "turn_state_changed",
            session_id=self._context.session_id,
            from_state=previous.value,
            to_state=state.value,
        )
        self._emit(TurnEventType.STATE_CHANGED, from_state=previous.value, to_state=state.value)

    def _append_entry(self, entry: DialogEntry) -> None:
        self._context.dialog.append(entry)
        self._emit(TurnEventType.DIALOG_APPENDED, entry=entry.to_dict())
        if self._on_dialog_entry is not None:
            try:
                self._on_dialog_entry(entry)
            except Exception as e:
                logger.error("dialog_hook_failed", entry_id=entry.id, error=str(e), exc_info=True)

    def _surface_error(self, error: Exception, event: str) -> None:
        logger.error(event, session_id=self._context.session_id, error=str(error),
                     error_type=type(error).__name__)
        self._context.last_error = str(error)
        self._emit(TurnEventType.ERROR, error=str(error), error_type=type(error).__name__)

    def _emit(self, event_type: TurnEventType, **data: Any) -> None:
        event = TurnEvent(type=event_type, data=data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("turn_listener_failed", event_type=event_type.value, error=str(e), exc_info=True)
