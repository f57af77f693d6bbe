"""In-memory collaborators for voice tests."""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable, Optional

from models.schemas import AgentThought, SpeakerRole, TranscriptSegment, Track, TurnResponse
from voice.base import (
    AudioOutput,
    ResponseGenerationError,
    ResponseGenerator,
    SpeechSynthesizer,
    SynthesisError,
    TrackHandle,
    TrackPlayer,
    TranscriptionClient,
)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class FakeSynthesizer(SpeechSynthesizer):

    def __init__(self, fail_on: tuple[str, ...] = (), delay: float = 0.0):
        self.fail_on = set(fail_on)
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def synthesize(self, voice_ref: str, text: str) -> bytes:
        self.calls.append((voice_ref, text))
        if self.delay:
            await asyncio.sleep(self.delay)
        if text in self.fail_on:
            raise SynthesisError(f"synthesis failed for {text!r}", status_code=500)
        return text.encode()


class FakeAudioOutput(AudioOutput):
    """Plays "audio" by sleeping; texts in ``hang_on`` never finish on their own."""

    def __init__(self, delay: float = 0.01, hang_on: tuple[str, ...] = ()):
        self.delay = delay
        self.hang_on = set(hang_on)
        self.started: list[str] = []
        self.played: list[str] = []
        self.cancelled: list[str] = []
        self.active = 0
        self.max_active = 0

    async def play(self, audio: bytes) -> None:
        text = audio.decode()
        self.started.append(text)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if text in self.hang_on:
                await asyncio.Event().wait()
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled.append(text)
            raise
        finally:
            self.active -= 1
        self.played.append(text)


class FakeTrackHandle(TrackHandle):

    def __init__(self, track: Track, loop: bool = False, fail: bool = False):
        self.track = track
        self.loop = loop
        self.fail = fail
        self._volume = 1.0
        self._closed = False
        self.playing = False
        self.offset: Optional[float] = None
        self.volume_history: list[float] = []
        self._on_ended: Optional[Callable[[], None]] = None

    @property
    def volume(self) -> float:
        return self._volume

    @volume.setter
    def volume(self, value: float) -> None:
        self._volume = value
        self.volume_history.append(value)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def audible(self) -> bool:
        return self.playing and not self._closed and self._volume > 0

    async def play(self, offset_s: float = 0.0) -> None:
        if self.fail:
            raise OSError(f"cannot open {self.track.source}")
        self.offset = offset_s
        self.playing = True

    def on_ended(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_ended = callback

    def close(self) -> None:
        self._closed = True
        self.playing = False

    def finish(self) -> None:
        """Simulate the track reaching its natural end."""
        self.playing = False
        if self._on_ended is not None:
            self._on_ended()


class FakeTrackPlayer(TrackPlayer):

    def __init__(self, fail_sources: tuple[str, ...] = ()):
        self.fail_sources = set(fail_sources)
        self.handles: list[FakeTrackHandle] = []

    def open(self, track: Track, loop: bool = False) -> FakeTrackHandle:
        handle = FakeTrackHandle(track, loop=loop, fail=track.source in self.fail_sources)
        self.handles.append(handle)
        return handle

    @property
    def open_handles(self) -> list[FakeTrackHandle]:
        return [h for h in self.handles if not h.closed]


class FakeTranscriptionClient(TranscriptionClient):

    def __init__(self, fail_connect: Optional[Exception] = None):
        self.fail_connect = fail_connect
        self.connects: list[str] = []
        self.disconnects = 0
        self._queue: Optional[asyncio.Queue] = None

    @property
    def connected(self) -> bool:
        return self._queue is not None

    async def connect(self, credentials: str) -> None:
        if self.fail_connect is not None:
            raise self.fail_connect
        self.connects.append(credentials)
        self._queue = asyncio.Queue()

    async def events(self) -> AsyncIterator[TranscriptSegment]:
        queue = self._queue
        while True:
            item = await queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def disconnect(self) -> None:
        self.disconnects += 1
        if self._queue is not None:
            self._queue.put_nowait(None)
        self._queue = None

    def emit(self, text: str, is_final: bool = False, timestamp: Optional[float] = None) -> None:
        self._queue.put_nowait(TranscriptSegment(text=text, is_final=is_final, timestamp=timestamp))

    def fail(self, error: Exception) -> None:
        self._queue.put_nowait(error)


class FakeResponseGenerator(ResponseGenerator):

    def __init__(
        self,
        responses: Optional[list[TurnResponse]] = None,
        opener: Optional[str] = None,
        fail_turn: bool = False,
        fail_session: bool = False,
    ):
        self.responses = list(responses or [])
        self.opener = opener
        self.fail_turn = fail_turn
        self.fail_session = fail_session
        self.turns: list[str] = []
        self.gate: Optional[asyncio.Event] = None

    async def create_session(self) -> str:
        if self.fail_session:
            raise ResponseGenerationError("backend unavailable")
        return "session-1"

    async def get_opener(self, session_id: str) -> Optional[str]:
        return self.opener

    async def generate_turn_response(self, session_id: str, user_text: str) -> TurnResponse:
        self.turns.append(user_text)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_turn:
            raise RuntimeError("model exploded")
        if self.responses:
            return self.responses.pop(0)
        return TurnResponse(final_response="Noted.")


def two_thought_response() -> TurnResponse:
    return TurnResponse(
        thoughts=[
            AgentThought(speaker=SpeakerRole.INSTINCT, text="Gut check"),
            AgentThought(speaker=SpeakerRole.LOGIC, text="Weigh it"),
        ],
        final_response="Final word",
    )
