"""
Ambient audio — background music and thinking cues.

Both run on their own TrackPlayer output, independent of the foreground
SpeechQueue: nothing here ever blocks a turn, and turn changes never
wait on a fade.

AmbientAudioMixer:
    Shuffled playlist; natural end of a track triggers a linear crossfade
    into the next one. Reshuffles when the playlist is exhausted.

ThinkingCue:
    Quiet looping "thinking" bed while the response is generated, and a
    short burst of the same sound between agent thoughts.
"""
from __future__ import annotations

import asyncio
import random
from typing import Optional

import structlog

from models.schemas import Track
from voice.base import TrackHandle, TrackPlayer

logger = structlog.get_logger()


class AmbientAudioMixer:

    def __init__(
        self,
        player: TrackPlayer,
        volume: float = 0.3,
        crossfade_ms: int = 4000,
        tick_ms: int = 50,
        start_debounce_ms: int = 300,
        max_tracks: int = 10,
        enabled: bool = False,
        tracks: Optional[list[Track]] = None,
        rng: Optional[random.Random] = None,
    ):
        self._player = player
        self._volume = volume
        self._crossfade_ms = crossfade_ms
        self._tick_ms = tick_ms
        self._start_debounce_s = start_debounce_ms / 1000
        self._max_tracks = max_tracks
        self._enabled = enabled
        self._rng = rng or random.Random()

        self._tracks: list[Track] = list(tracks or [])[:max_tracks]
        self._shuffled: list[Track] = []
        self._index = 0

        self._current: Optional[TrackHandle] = None
        self._current_track: Optional[Track] = None
        self._next: Optional[TrackHandle] = None
        self._next_track: Optional[Track] = None

        self._fade: Optional[asyncio.Task] = None
        self._start_timer: Optional[asyncio.Task] = None
        self._starting = False
        self._playing = False

    # ── State ─────────────────────────────────────────────────

    @property
    def tracks(self) -> list[Track]:
        return list(self._tracks)

    @property
    def current_track(self) -> Optional[Track]:
        return self._current_track

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def is_fading(self) -> bool:
        return self._fade is not None and not self._fade.done()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def volume(self) -> float:
        return self._volume

    # ── Playlist management ───────────────────────────────────

    def set_tracks(self, tracks: list[Track]) -> None:
        if len(tracks) > self._max_tracks:
            raise ValueError(f"At most {self._max_tracks} background tracks are allowed")
        self._tracks = list(tracks)
        self._on_tracks_changed()

    def add_track(self, track: Track) -> None:
        if len(self._tracks) >= self._max_tracks:
            raise ValueError(f"At most {self._max_tracks} background tracks are allowed")
        self._tracks.append(track)
        logger.info("ambient_track_added", track_id=track.id, name=track.name)
        self._on_tracks_changed()

    def remove_track(self, track_id: str) -> bool:
        before = len(self._tracks)
        self._tracks = [t for t in self._tracks if t.id != track_id]
        removed = len(self._tracks) != before
        if removed:
            logger.info("ambient_track_removed", track_id=track_id)
            self._on_tracks_changed()
        return removed

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        if enabled:
            self.schedule_start()
        else:
            self.stop()

    def _on_tracks_changed(self) -> None:
        if not self._tracks:
            self.stop()
        elif self._enabled and not self._playing:
            self.schedule_start()

    # ── Start / stop ──────────────────────────────────────────

    def schedule_start(self) -> None:
        """Debounced start so a burst of track additions starts playback once."""
        if self._start_timer is not None and not self._start_timer.done():
            self._start_timer.cancel()
        self._start_timer = asyncio.get_running_loop().create_task(
            self._delayed_start(), name="ambient_start_debounce",
        )

    async def _delayed_start(self) -> None:
        await asyncio.sleep(self._start_debounce_s)
        if self._enabled and not self._playing and not self._starting and self._tracks:
            await self.start()

    async def start(self) -> None:
        if self._starting or self._playing or not self._tracks:
            return
        self._starting = True
        self._release_handles()
        self._reshuffle()

        track = self._shuffled[0]
        try:
            handle = self._player.open(track)
            handle.volume = self._volume
            handle.on_ended(self._on_track_ended)
            self._current, self._current_track = handle, track
            await handle.play()
        except Exception as e:
            logger.error("ambient_start_failed", track_id=track.id, error=str(e))
            self._release_handles()
            self._starting = False
            return

        if not self._starting:
            # stop() ran while the device was starting
            return
        self._starting = False
        self._playing = True
        logger.info("ambient_started", track_id=track.id, name=track.name)

    def stop(self) -> None:
        if self._start_timer is not None and not self._start_timer.done():
            self._start_timer.cancel()
        self._start_timer = None
        if self._fade is not None and not self._fade.done():
            self._fade.cancel()
        self._fade = None
        was_playing = self._playing
        self._release_handles()
        self._playing = False
        self._starting = False
        if was_playing:
            logger.info("ambient_stopped")

    def set_volume(self, volume: float) -> None:
        self._volume = max(0.0, min(1.0, volume))
        # A running crossfade keeps its ramp; the new level lands when it completes
        if self._current is not None and not self.is_fading:
            self._current.volume = self._volume

    # ── Crossfade ─────────────────────────────────────────────

    def _on_track_ended(self) -> None:
        if self._playing:
            self.crossfade_to_next()

    def crossfade_to_next(self) -> None:
        if not self._playing or not self._tracks:
            return
        if self.is_fading:
            self._fade.cancel()
            self._complete_fade()

        track = self._advance()
        if track is None:
            return
        try:
            incoming = self._player.open(track)
        except Exception as e:
            logger.error("ambient_open_failed", track_id=track.id, error=str(e))
            return
        incoming.volume = 0.0
        self._next, self._next_track = incoming, track
        self._fade = asyncio.get_running_loop().create_task(
            self._run_crossfade(), name="ambient_crossfade",
        )

    async def _run_crossfade(self) -> None:
        incoming, outgoing = self._next, self._current
        try:
            await incoming.play()
        except Exception as e:
            logger.error("ambient_crossfade_failed", track_id=self._next_track.id, error=str(e))
            incoming.close()
            self._next, self._next_track = None, None
            return

        target = self._volume
        steps = max(1, round(self._crossfade_ms / self._tick_ms))
        step_volume = target / steps
        for step in range(1, steps + 1):
            await asyncio.sleep(self._tick_ms / 1000)
            if outgoing is not None and not outgoing.closed:
                outgoing.volume = max(0.0, target - step_volume * step)
            incoming.volume = min(target, step_volume * step)
        self._complete_fade()

    def _complete_fade(self) -> None:
        incoming, track = self._next, self._next_track
        if incoming is None:
            return
        if self._current is not None:
            self._current.close()
        incoming.volume = self._volume
        incoming.on_ended(self._on_track_ended)
        self._current, self._current_track = incoming, track
        self._next, self._next_track = None, None
        self._fade = None
        logger.debug("ambient_crossfade_complete", track_id=track.id)

    # ── Shuffle ───────────────────────────────────────────────

    def _reshuffle(self) -> None:
        shuffled = list(self._tracks)
        self._rng.shuffle(shuffled)    # Fisher-Yates
        self._shuffled = shuffled
        self._index = 0

    def _advance(self) -> Optional[Track]:
        available = {t.id for t in self._tracks}
        self._index += 1
        while self._index < len(self._shuffled) and self._shuffled[self._index].id not in available:
            self._index += 1
        if self._index >= len(self._shuffled):
            self._reshuffle()
        return self._shuffled[self._index] if self._shuffled else None

    def _release_handles(self) -> None:
        for handle in (self._current, self._next):
            if handle is not None:
                handle.close()
        self._current = self._current_track = None
        self._next = self._next_track = None


class ThinkingCue:
    """
    Usage:
        cue = ThinkingCue(player, Track(name="thinking", source="thinking.wav"))
        await cue.start_loop()       # while waiting for the response
        cue.stop_loop()              # fades out in the background
        cue.play_brief()             # between agent thoughts
    """

    def __init__(
        self,
        player: TrackPlayer,
        track: Optional[Track],
        loop_volume: float = 0.04,
        cue_volume: float = 0.03,
        rng: Optional[random.Random] = None,
    ):
        self._player = player
        self._track = track
        self._loop_volume = loop_volume
        self._cue_volume = cue_volume
        self._rng = rng or random.Random()

        self._loop: Optional[TrackHandle] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def looping(self) -> bool:
        return self._loop is not None

    async def start_loop(self) -> None:
        if self._track is None or self._loop is not None:
            return
        try:
            handle = self._player.open(self._track, loop=True)
            handle.volume = self._loop_volume
            self._loop = handle
            await handle.play(offset_s=self._rng.uniform(0, 60))
        except Exception as e:
            logger.warning("thinking_audio_failed", error=str(e))
            self._close_loop()

    def stop_loop(self) -> None:
        handle, self._loop = self._loop, None
        if handle is not None:
            self._spawn(self._fade_out(handle, step=0.008, tick_s=0.05))

    def play_brief(self) -> Optional[asyncio.Task]:
        if self._track is None:
            return None
        return self._spawn(self._brief())

    def stop_all(self) -> None:
        self._close_loop()
        for task in list(self._tasks):
            task.cancel()

    async def _brief(self) -> None:
        try:
            handle = self._player.open(self._track)
            handle.volume = self._cue_volume
            await handle.play(offset_s=self._rng.uniform(0, 30))
        except Exception as e:
            logger.debug("thinking_cue_failed", error=str(e))
            return
        try:
            await asyncio.sleep(0.3)
        except asyncio.CancelledError:
            handle.close()
            raise
        await self._fade_out(handle, step=0.015, tick_s=0.02)

    @staticmethod
    async def _fade_out(handle: TrackHandle, step: float, tick_s: float) -> None:
        try:
            while handle.volume > 0.005 and not handle.closed:
                handle.volume = max(0.0, handle.volume - step)
                await asyncio.sleep(tick_s)
        finally:
            handle.close()

    def _close_loop(self) -> None:
        handle, self._loop = self._loop, None
        if handle is not None:
            handle.close()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
