"""
Voice Subsystem — real-time turn-taking over a single foreground channel.

Modules:
- speech_queue: serial, cancelable playback of synthesized utterances
- transcription: streaming STT with committed + partial transcript views
- submit_detection: spoken "submit" command recognition
- ambient: background-music crossfades and thinking cues
- skip: user interrupts during AI turns
- turn_controller: the conversation state machine
- session: composition root built from settings
- providers / devices: ElevenLabs adapters and local audio devices
"""
from voice.base import (
    VoiceError, SynthesisError, PlaybackError, ResponseGenerationError,
    TranscriptionError, TranscriptionAuthError, TurnStateError,
)
from voice.context import SessionContext
from voice.speech_queue import SpeechQueue, Utterance, UtteranceOutcome
from voice.transcription import TranscriptionSession
from voice.submit_detection import SubmitDetector, detect_submit, clean_submit_text
from voice.ambient import AmbientAudioMixer, ThinkingCue
from voice.skip import SkipController
from voice.turn_controller import TurnController, TurnEvent, TurnEventType

__all__ = [
    "VoiceError", "SynthesisError", "PlaybackError", "ResponseGenerationError",
    "TranscriptionError", "TranscriptionAuthError", "TurnStateError",
    "SessionContext",
    "SpeechQueue", "Utterance", "UtteranceOutcome",
    "TranscriptionSession",
    "SubmitDetector", "detect_submit", "clean_submit_text",
    "AmbientAudioMixer", "ThinkingCue",
    "SkipController",
    "TurnController", "TurnEvent", "TurnEventType",
]
