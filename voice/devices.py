"""
Local audio devices — PortAudio via sounddevice, files via soundfile.

- SoundDeviceOutput:       the foreground speaker (raw int16 PCM)
- SoundDeviceTrackPlayer:  independent ambient outputs with live volume
- MicrophoneInput:         16 kHz mono int16 chunks for the recognizer

Blocking PortAudio work runs in worker threads; stream callbacks report
back to the event loop with ``call_soon_threadsafe``.
"""
from __future__ import annotations

import asyncio
import threading
from typing import AsyncIterator, Callable, Optional

import numpy as np
import sounddevice as sd
import soundfile as sf
import structlog

from models.schemas import Track
from voice.base import AudioInput, AudioOutput, PlaybackError, TrackHandle, TrackPlayer

logger = structlog.get_logger()


class SoundDeviceOutput(AudioOutput):

    def __init__(self, sample_rate: int = 16000, chunk_frames: int = 2048, device: Optional[int] = None):
        self.sample_rate = sample_rate
        self.chunk_frames = chunk_frames      # 128ms at 16kHz
        self.device = device

    async def play(self, audio: bytes) -> None:
        samples = np.frombuffer(audio, dtype=np.int16)
        if samples.size == 0:
            return
        stop = threading.Event()
        try:
            await asyncio.to_thread(self._write, samples, stop)
        except asyncio.CancelledError:
            stop.set()
            raise
        except sd.PortAudioError as e:
            raise PlaybackError(f"Audio output failed: {e}", retryable=True) from e

    def _write(self, samples: np.ndarray, stop: threading.Event) -> None:
        with sd.OutputStream(
            samplerate=self.sample_rate, channels=1, dtype="int16", device=self.device,
        ) as stream:
            for start in range(0, samples.size, self.chunk_frames):
                if stop.is_set():
                    stream.abort()
                    return
                stream.write(samples[start:start + self.chunk_frames])


class SoundDeviceTrackHandle(TrackHandle):
    """A decoded file played through its own callback stream."""

    def __init__(self, track: Track, loop: bool = False, device: Optional[int] = None):
        self.track = track
        self.loop = loop
        self.device = device
        self._volume = 1.0
        self._closed = False
        self._data: Optional[np.ndarray] = None
        self._sample_rate = 0
        self._position = 0
        self._stream: Optional[sd.OutputStream] = None
        self._on_ended: Optional[Callable[[], None]] = None
        self._event_loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def volume(self) -> float:
        return self._volume

    @volume.setter
    def volume(self, value: float) -> None:
        self._volume = max(0.0, min(1.0, float(value)))

    @property
    def closed(self) -> bool:
        return self._closed

    def on_ended(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_ended = callback

    async def play(self, offset_s: float = 0.0) -> None:
        if self._closed:
            raise PlaybackError(f"Track {self.track.id} is closed")
        self._event_loop = asyncio.get_running_loop()
        if self._data is None:
            try:
                self._data, self._sample_rate = await asyncio.to_thread(
                    sf.read, self.track.source, dtype="float32", always_2d=True,
                )
            except (sf.SoundFileError, OSError) as e:
                raise PlaybackError(f"Cannot decode {self.track.source}: {e}") from e
        if self._closed or len(self._data) == 0:
            return

        # Offsets past the end wrap, so random start points are always valid
        self._position = int(offset_s * self._sample_rate) % len(self._data)
        self._stream = sd.OutputStream(
            samplerate=self._sample_rate,
            channels=self._data.shape[1],
            dtype="float32",
            device=self.device,
            callback=self._fill,
            finished_callback=self._finished,
        )
        self._stream.start()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.abort()
                stream.close()
            except sd.PortAudioError as e:
                logger.debug("track_close_failed", track_id=self.track.id, error=str(e))

    def _fill(self, outdata, frames, time_info, status) -> None:
        data = self._data
        written = 0
        while written < frames:
            remaining = len(data) - self._position
            if remaining <= 0:
                if not self.loop:
                    outdata[written:] = 0
                    raise sd.CallbackStop
                self._position = 0
                remaining = len(data)
            count = min(frames - written, remaining)
            outdata[written:written + count] = data[self._position:self._position + count] * self._volume
            self._position += count
            written += count

    def _finished(self) -> None:
        if self._closed or self._event_loop is None:
            return
        self._event_loop.call_soon_threadsafe(self._fire_ended)

    def _fire_ended(self) -> None:
        if self._closed:
            return
        if self._on_ended is not None:
            self._on_ended()


class SoundDeviceTrackPlayer(TrackPlayer):

    def __init__(self, device: Optional[int] = None):
        self.device = device

    def open(self, track: Track, loop: bool = False) -> TrackHandle:
        return SoundDeviceTrackHandle(track, loop=loop, device=self.device)


class MicrophoneInput(AudioInput):

    def __init__(self, sample_rate: int = 16000, chunk_ms: int = 100, device: Optional[int] = None):
        self.sample_rate = sample_rate
        self.blocksize = int(sample_rate * chunk_ms / 1000)
        self.device = device

    async def chunks(self) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[bytes] = asyncio.Queue()

        def callback(indata, frames, time_info, status):
            if status:
                logger.debug("microphone_status", status=str(status))
            loop.call_soon_threadsafe(queue.put_nowait, bytes(indata))

        stream = sd.RawInputStream(
            samplerate=self.sample_rate,
            blocksize=self.blocksize,
            channels=1,
            dtype="int16",
            device=self.device,
            callback=callback,
        )
        stream.start()
        logger.info("microphone_started", sample_rate=self.sample_rate)
        try:
            while True:
                yield await queue.get()
        finally:
            stream.stop()
            stream.close()
            logger.info("microphone_stopped")
