"""
Submit Detection — recognizes an explicit spoken "submit" command.

Only a trailing "submit" counts. Intent phrases ("I want to submit") and
in-sentence usage ("submit a report", "submitted") never fire. A detected
command waits a short debounce so continued speech ("submit... a form")
can still cancel it.
"""
from __future__ import annotations

import asyncio
import re
from typing import Callable, Optional

import structlog

logger = structlog.get_logger()

_TRAILING_SUBMIT = re.compile(r"\bsubmit[.!?,\s]*$")
_INTENT_BEFORE = re.compile(
    r"\b(to|will|can|should|must|could|would|want to|going to|need to)\s*$"
)
_STRIP_SUBMIT = re.compile(r"[\s.,!?;:]*\bsubmit[.!?,\s]*$", re.IGNORECASE)


def detect_submit(text: str) -> bool:
    lower = text.lower().strip()
    if "submit" not in lower:
        return False

    if _TRAILING_SUBMIT.search(lower):
        before = lower[:lower.rfind("submit")].strip()
        return not _INTENT_BEFORE.search(before)

    # "submit a report", "submitted", "submission": ordinary speech
    return False


def clean_submit_text(text: str) -> str:
    """Strip the trailing command: "okay I'm ready, submit" -> "okay I'm ready"."""
    return _STRIP_SUBMIT.sub("", text).strip()


class SubmitDetector:
    """
    Usage:
        detector = SubmitDetector(on_submit=controller.submit_user_text)
        session.subscribe(detector.process)
        ...
        detector.reset()    # at the start of every user turn
    """

    def __init__(self, on_submit: Callable[[str], None], debounce_ms: int = 150):
        self._on_submit = on_submit
        self._debounce_s = debounce_ms / 1000
        self._last_text = ""
        self._triggered = False
        self._timer: Optional[asyncio.Task] = None
        self._enabled = True

    @property
    def triggered(self) -> bool:
        return self._triggered

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        self._enabled = False
        self._cancel_timer()

    def process(self, committed: str, partial: str) -> None:
        """Feed the latest transcript views. Must be called from the event loop."""
        if not self._enabled:
            return
        full_text = f"{committed} {partial}".strip()
        if self._triggered or full_text == self._last_text:
            return
        self._last_text = full_text

        self._cancel_timer()
        if detect_submit(full_text):
            logger.debug("submit_candidate", text=full_text)
            self._timer = asyncio.get_running_loop().create_task(
                self._fire_after_debounce(full_text), name="submit_debounce",
            )

    def reset(self) -> None:
        self._last_text = ""
        self._triggered = False
        self._cancel_timer()

    async def _fire_after_debounce(self, text: str) -> None:
        await asyncio.sleep(self._debounce_s)
        if self._triggered or not self._enabled:
            return
        self._triggered = True
        cleaned = clean_submit_text(text)
        logger.info("submit_detected", text=cleaned)
        try:
            self._on_submit(cleaned)
        except Exception as e:
            logger.error("submit_callback_failed", error=str(e), exc_info=True)

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
