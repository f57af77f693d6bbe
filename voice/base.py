"""
Voice collaborator contracts and error taxonomy.

Provides:
- VoiceError hierarchy: transient (synthesis/playback), fatal-turn
  (response generation), protocol/auth (transcription credentials)
- SpeechSynthesizer / AudioOutput: the foreground speech path
- TrackPlayer / TrackHandle: the independent ambient output
- AudioInput / TranscriptionClient: the microphone path
- ResponseGenerator: the language-model / routing collaborator

Concrete vendors live in voice.providers, devices in voice.devices and
response generation in backend.connector.
"""
from __future__ import annotations

import abc
from typing import AsyncIterator, Callable, Optional

from models.schemas import TranscriptSegment, Track, TurnResponse


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class VoiceError(Exception):
    """Base exception for all voice operations."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class SynthesisError(VoiceError):
    """TTS request failed. Degrades to text-only playback."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message, retryable=False)


class PlaybackError(VoiceError):
    """The audio device refused or aborted playback."""


class ResponseGenerationError(VoiceError):
    """The turn's response could not be produced. Fatal to the turn only."""


class TranscriptionError(VoiceError):
    """Streaming recognizer failure."""


class TranscriptionAuthError(TranscriptionError):
    """Missing or rejected credentials. Never retried."""


class TurnStateError(VoiceError):
    """A turn operation was invoked from a state that does not allow it."""


# ══════════════════════════════════════════════════════════════
#  FOREGROUND SPEECH
# ══════════════════════════════════════════════════════════════

class SpeechSynthesizer(abc.ABC):

    @abc.abstractmethod
    async def synthesize(self, voice_ref: str, text: str) -> bytes:
        """
        Return audio for ``text`` spoken by ``voice_ref``.
        Must stop promptly when the awaiting task is cancelled.
        """
        ...

    async def close(self) -> None:
        """Release pooled connections. Safe to call more than once."""


class AudioOutput(abc.ABC):
    """The sole foreground speaker."""

    @abc.abstractmethod
    async def play(self, audio: bytes) -> None:
        """Play ``audio`` and return once playback completed; cancel stops it."""
        ...


# ══════════════════════════════════════════════════════════════
#  AMBIENT OUTPUT
# ══════════════════════════════════════════════════════════════

class TrackHandle(abc.ABC):
    """One opened ambient track with live volume control."""

    @property
    @abc.abstractmethod
    def volume(self) -> float:
        ...

    @volume.setter
    @abc.abstractmethod
    def volume(self, value: float) -> None:
        ...

    @property
    @abc.abstractmethod
    def closed(self) -> bool:
        ...

    @abc.abstractmethod
    async def play(self, offset_s: float = 0.0) -> None:
        """Start playback; returns as soon as audio is running."""
        ...

    @abc.abstractmethod
    def on_ended(self, callback: Optional[Callable[[], None]]) -> None:
        """Register the natural end-of-track callback (replaces any previous)."""
        ...

    @abc.abstractmethod
    def close(self) -> None:
        """Stop immediately and release resources. Never fires on_ended."""
        ...


class TrackPlayer(abc.ABC):

    @abc.abstractmethod
    def open(self, track: Track, loop: bool = False) -> TrackHandle:
        ...


# ══════════════════════════════════════════════════════════════
#  MICROPHONE / TRANSCRIPTION
# ══════════════════════════════════════════════════════════════

class AudioInput(abc.ABC):

    @abc.abstractmethod
    def chunks(self) -> AsyncIterator[bytes]:
        """Yield PCM chunks until the consuming task is cancelled."""
        ...


class TranscriptionClient(abc.ABC):

    @abc.abstractmethod
    async def connect(self, credentials: str) -> None:
        ...

    @abc.abstractmethod
    def events(self) -> AsyncIterator[TranscriptSegment]:
        """Recognizer events until disconnect."""
        ...

    @abc.abstractmethod
    async def disconnect(self) -> None:
        ...


# ══════════════════════════════════════════════════════════════
#  RESPONSE GENERATION
# ══════════════════════════════════════════════════════════════

class ResponseGenerator(abc.ABC):

    @abc.abstractmethod
    async def create_session(self) -> str:
        """Open a conversation and return its session id."""
        ...

    @abc.abstractmethod
    async def get_opener(self, session_id: str) -> Optional[str]:
        """Greeting spoken by the Governor when the session starts."""
        ...

    @abc.abstractmethod
    async def generate_turn_response(self, session_id: str, user_text: str) -> TurnResponse:
        """Agent thoughts plus final response for one user turn."""
        ...

    async def close(self) -> None:
        """Release pooled connections. Safe to call more than once."""
