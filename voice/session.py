"""
Voice Session — composition root and imperative control surface.

Wires one TurnController to concrete collaborators built from settings:
ElevenLabs TTS/STT when an API key is configured (text-only otherwise),
local sounddevice outputs, and the configured response generator.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

from backend.connector import create_response_generator
from config.settings import Settings, get_settings
from models.schemas import DialogEntry, Track
from voice.ambient import AmbientAudioMixer, ThinkingCue
from voice.base import (
    AudioOutput,
    ResponseGenerator,
    SpeechSynthesizer,
    TrackPlayer,
    TranscriptionClient,
)
from voice.context import SessionContext
from voice.providers import ElevenLabsSpeechSynthesizer, ScribeRealtimeClient, ScribeTokenProvider
from voice.skip import SkipController
from voice.speech_queue import SpeechQueue
from voice.transcription import TranscriptionSession
from voice.turn_controller import TurnController, TurnListener
from voice.typewriter import estimated_duration_s, reveal

logger = structlog.get_logger()

# Average speaking pace, used to pace the text reveal against live audio
SPEAKING_MS_PER_CHAR = 65


class VoiceSession:

    def __init__(
        self,
        settings: Settings,
        generator: ResponseGenerator,
        output: AudioOutput,
        track_player: TrackPlayer,
        transcription_client: TranscriptionClient,
        credentials_provider: Callable[[], Awaitable[str]],
        synthesizer: Optional[SpeechSynthesizer] = None,
        on_dialog_entry: Optional[Callable[[DialogEntry], None]] = None,
    ):
        self.settings = settings
        self.generator = generator
        self.synthesizer = synthesizer
        self.context = SessionContext()
        self.queue = SpeechQueue(output, synthesizer, ms_per_char=settings.turn.fallback_ms_per_char)
        self.transcription = TranscriptionSession(
            transcription_client, credentials_provider, on_error=self._on_transcription_error,
        )
        self.skip = SkipController(self.queue, self.context)

        amb = settings.ambient
        self.ambient = AmbientAudioMixer(
            track_player,
            volume=amb.volume,
            crossfade_ms=amb.crossfade_ms,
            tick_ms=amb.tick_ms,
            start_debounce_ms=amb.start_debounce_ms,
            max_tracks=amb.max_tracks,
            enabled=amb.enabled,
            tracks=amb.tracks,
        )
        thinking_track = (
            Track(id="thinking", name="thinking", source=amb.thinking_source)
            if amb.thinking_source else None
        )
        self.thinking = ThinkingCue(
            track_player, thinking_track,
            loop_volume=amb.thinking_volume, cue_volume=amb.cue_volume,
        )

        self.controller = TurnController(
            self.context,
            self.queue,
            self.transcription,
            self.skip,
            generator,
            settings.voices,
            turn_config=settings.turn,
            thinking=self.thinking,
            ambient=self.ambient,
            on_dialog_entry=on_dialog_entry,
        )
        self._start_task: Optional[asyncio.Task] = None
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        generator: Optional[ResponseGenerator] = None,
    ) -> "VoiceSession":
        """Build a session on the local audio devices."""
        # PortAudio is loaded only when real devices are requested
        from voice.devices import MicrophoneInput, SoundDeviceOutput, SoundDeviceTrackPlayer

        settings = settings or get_settings()
        el = settings.elevenlabs
        synthesizer = ElevenLabsSpeechSynthesizer(el) if el.api_key else None
        if synthesizer is None:
            logger.warning("tts_disabled", reason="no ElevenLabs API key; speech is text-only")

        return cls(
            settings=settings,
            generator=generator or create_response_generator(settings.backend),
            output=SoundDeviceOutput(sample_rate=el.sample_rate),
            track_player=SoundDeviceTrackPlayer(),
            transcription_client=ScribeRealtimeClient(MicrophoneInput(sample_rate=el.sample_rate), el),
            credentials_provider=ScribeTokenProvider(el),
            synthesizer=synthesizer,
        )

    # ── Session controls ──────────────────────────────────────

    async def start_session(self) -> None:
        """Kick off the session; the opener plays in the background."""
        if self._start_task is not None:
            return
        self._start_task = asyncio.get_running_loop().create_task(
            self.controller.start_session(), name="voice_session_start",
        )
        if self.ambient.enabled and self.ambient.tracks:
            self.ambient.schedule_start()

    async def end_session(self) -> None:
        task = self._start_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.controller.end_session()
        await self._close_clients()

    async def restart_transcription(self) -> bool:
        """Reconnect the recognizer after a stream failure; True when listening again."""
        return await self.controller.restart_transcription()

    async def wait_idle(self) -> None:
        """Wait until the opener and any in-flight AI turn completed."""
        if self._start_task is not None:
            await asyncio.shield(self._start_task)
        await self.controller.wait_for_turn()

    def submit_user_text(self, text: str) -> bool:
        return self.controller.submit_user_text(text)

    def skip_current_utterance(self) -> bool:
        return self.skip.skip_current()

    def skip_to_end_of_ai_turn(self) -> bool:
        return self.skip.skip_to_end()

    def subscribe(self, listener: TurnListener) -> Callable[[], None]:
        return self.controller.subscribe(listener)

    # ── Observation ───────────────────────────────────────────

    def snapshot(self) -> dict[str, Any]:
        data = self.context.to_dict()
        current = self.queue.current
        if current is not None:
            duration = estimated_duration_s(current.text, SPEAKING_MS_PER_CHAR)
            progress = self.queue.current_elapsed_s / duration if duration else 1.0
            data["active_reveal"] = reveal(current.text, progress)
        else:
            data["active_reveal"] = ""
        data["queue_length"] = len(self.queue)
        data["transcript"] = {
            "committed": self.transcription.committed_text,
            "partial": self.transcription.partial_text,
            "active": self.transcription.is_active,
        }
        data["music"] = {
            "enabled": self.ambient.enabled,
            "playing": self.ambient.is_playing,
            "volume": self.ambient.volume,
            "current_track": self.ambient.current_track.model_dump() if self.ambient.current_track else None,
            "tracks": [t.model_dump() for t in self.ambient.tracks],
        }
        return data

    def export_transcript(self) -> str:
        return self.context.export_text()

    # ── Background music ──────────────────────────────────────

    def add_track(self, track: Track) -> None:
        self.ambient.add_track(track)

    def remove_track(self, track_id: str) -> bool:
        return self.ambient.remove_track(track_id)

    def set_music_volume(self, volume: float) -> None:
        self.ambient.set_volume(volume)

    def set_music_enabled(self, enabled: bool) -> None:
        self.ambient.set_enabled(enabled)

    # ── Internals ─────────────────────────────────────────────

    def _on_transcription_error(self, error: Exception) -> None:
        self.controller.report_error(error)

    async def _close_clients(self) -> None:
        # Each session owns its HTTP pools; the next session opens fresh ones
        if self._closed:
            return
        self._closed = True
        for resource in (self.synthesizer, self.generator):
            if resource is None:
                continue
            try:
                await resource.close()
            except Exception as e:
                logger.warning("session_client_close_failed", client=type(resource).__name__, error=str(e))
