"""
Skip Controller — user interrupts during an AI turn.

skip_current:
    thoughts phase  → skip the in-flight thought, the next one plays
    response phase  → force-complete the whole AI turn
skip_to_end:
    thoughts phase  → drop the remaining thoughts, the response still plays
    response phase  → force-complete the whole AI turn

Force-completion clears the SpeechQueue and runs the bound turn finisher,
which is idempotent against normal completion.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from models.schemas import TurnState
from voice.context import SessionContext
from voice.speech_queue import SpeechQueue

logger = structlog.get_logger()

TurnFinisher = Callable[[], Awaitable[None]]


class SkipController:

    def __init__(self, queue: SpeechQueue, context: SessionContext):
        self._queue = queue
        self._context = context
        self._finisher: Optional[TurnFinisher] = None
        self._finish_task: Optional[asyncio.Task] = None
        self.skip_current_requested = False
        self.skip_to_end_requested = False

    def bind_finisher(self, finisher: Optional[TurnFinisher]) -> None:
        self._finisher = finisher

    def reset(self) -> None:
        self.skip_current_requested = False
        self.skip_to_end_requested = False

    def skip_current(self) -> bool:
        state = self._context.state
        if state == TurnState.AI_SPEAKING_RESPONSE:
            self.skip_current_requested = True
            self._force_complete("skip_current")
            return True
        if state == TurnState.AI_SPEAKING_THOUGHTS:
            self.skip_current_requested = True
            skipped = self._queue.skip_current()
            logger.info("skip_current_thought", session_id=self._context.session_id, skipped=skipped)
            return skipped
        logger.debug("skip_ignored", state=state.value)
        return False

    def skip_to_end(self) -> bool:
        state = self._context.state
        if state == TurnState.AI_SPEAKING_RESPONSE:
            self.skip_to_end_requested = True
            self._force_complete("skip_to_end")
            return True
        if state in (TurnState.AI_THINKING, TurnState.AI_SPEAKING_THOUGHTS):
            self.skip_to_end_requested = True
            self._queue.skip_to_end()
            logger.info("skip_remaining_thoughts", session_id=self._context.session_id)
            return True
        logger.debug("skip_ignored", state=state.value)
        return False

    def _force_complete(self, reason: str) -> None:
        logger.info("ai_turn_force_complete", session_id=self._context.session_id, reason=reason)
        self._queue.clear()
        if self._finisher is None:
            return
        if self._finish_task is not None and not self._finish_task.done():
            return
        self._finish_task = asyncio.get_running_loop().create_task(
            self._finisher(), name="turn_force_finish",
        )
