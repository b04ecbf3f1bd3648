"""Cuts the mixed audio stream into fixed-length segments and emits interim/final chunks."""

from __future__ import annotations

import asyncio
import io
import logging
import time
import wave
from collections import deque
from typing import Any, Callable, Deque, List, Optional

import numpy as np

from copilot.config import Config
from copilot.errors import NoAudioTrack
from copilot.media import MediaStream, MediaTrack, to_pcm16
from copilot.models import AudioChunk

logger = logging.getLogger(__name__)


def encode_wav(pcm: bytes, sample_rate: int) -> bytes:
    """Wrap PCM16 mono bytes in a WAV container."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buf.getvalue()


class ChunkRecorder:
    """
    Records the mixed audio track in `chunk_seconds` segments.

    - Every segment joins the full recording and a rolling window of the
      last `interim_window` segments.
    - Once the window is full and `interim_cooldown` has passed since the
      previous interim, the window is emitted as an interim chunk.
    - `stop()` emits every segment since start (or the last reset) as one
      final chunk. Nothing is emitted after that.
    """

    def __init__(
        self,
        on_chunk: Callable[[AudioChunk], Any],
        sample_rate: Optional[int] = None,
        chunk_seconds: Optional[float] = None,
        interim_window: Optional[int] = None,
        interim_cooldown: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.on_chunk = on_chunk
        self.sample_rate = int(sample_rate or Config.SAMPLE_RATE)
        self.chunk_seconds = float(chunk_seconds or Config.CHUNK_SECONDS)
        self.interim_window = int(interim_window or Config.INTERIM_WINDOW)
        self.interim_cooldown = float(
            Config.INTERIM_COOLDOWN_SECONDS if interim_cooldown is None else interim_cooldown
        )
        self.clock = clock

        self._track: Optional[MediaTrack] = None
        self._recording = False
        self._pending: List[np.ndarray] = []
        self._segments: List[bytes] = []
        self._window: Deque[bytes] = deque(maxlen=self.interim_window)
        self._last_interim_at: Optional[float] = None
        self._timer: Optional[asyncio.Task] = None

    @property
    def recording(self) -> bool:
        return self._recording

    @property
    def segment_count(self) -> int:
        return len(self._segments)

    def start(self, stream: MediaStream, timer: bool = True) -> None:
        """Begin recording the stream's first audio track.

        With `timer=False` segments are only cut by explicit `request_data()` calls.
        """
        if self._recording:
            return
        tracks = stream.audio_tracks()
        if not tracks:
            raise NoAudioTrack('No tab audio – did you pick "Share tab audio"?')

        self._track = tracks[0]
        if self._track.sample_rate:
            self.sample_rate = int(self._track.sample_rate)
        self._clear_buffers()
        self._recording = True
        self._track.add_listener(self._on_block)
        self._track.add_ended_listener(self._on_track_ended)

        if timer:
            self._timer = asyncio.get_running_loop().create_task(self._segment_loop())
        logger.info("[RECORDER] Started (%.1fs segments, window=%d)", self.chunk_seconds, self.interim_window)

    async def _segment_loop(self) -> None:
        while self._recording:
            await asyncio.sleep(self.chunk_seconds)
            if not self._recording:
                break
            self.request_data()

    def _on_block(self, block: np.ndarray) -> None:
        if self._recording:
            self._pending.append(block)

    def _on_track_ended(self, track: MediaTrack) -> None:
        self.stop()

    def _cut_segment(self) -> Optional[bytes]:
        if not self._pending:
            return None
        samples = np.concatenate(self._pending)
        self._pending = []
        if samples.size == 0:
            return None
        return to_pcm16(samples)

    def request_data(self) -> None:
        """Close the current segment (a "dataavailable" tick) and maybe emit an interim chunk."""
        if not self._recording:
            return
        segment = self._cut_segment()
        if segment is None:
            return
        self._segments.append(segment)
        self._window.append(segment)
        self._maybe_emit_interim()

    def _maybe_emit_interim(self) -> None:
        if len(self._window) < self.interim_window:
            return
        now = self.clock()
        if self._last_interim_at is not None and now - self._last_interim_at < self.interim_cooldown:
            return
        self._last_interim_at = now
        self._emit(b"".join(self._window), is_final=False)

    def stop(self) -> None:
        """Flush the trailing segment and emit the whole recording as a final chunk."""
        if not self._recording:
            return
        trailing = self._cut_segment()
        if trailing is not None:
            self._segments.append(trailing)

        self._recording = False
        if self._track is not None:
            self._track.remove_listener(self._on_block)
            self._track.remove_ended_listener(self._on_track_ended)
            self._track = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        segments = self._segments
        self._clear_buffers()
        logger.info("[RECORDER] Stopped after %d segment(s)", len(segments))
        if segments:
            self._emit(b"".join(segments), is_final=True)

    def reset(self) -> None:
        """Drop everything recorded so far but keep recording ("clear context")."""
        if not self._recording:
            return
        self._clear_buffers()
        logger.info("[RECORDER] Context cleared")

    def _clear_buffers(self) -> None:
        self._pending = []
        self._segments = []
        self._window.clear()
        self._last_interim_at = None

    def _emit(self, pcm: bytes, is_final: bool) -> None:
        chunk = AudioChunk(data=encode_wav(pcm, self.sample_rate), is_final=is_final)
        logger.debug("[RECORDER] %s chunk, %d bytes", "final" if is_final else "interim", len(chunk.data))
        self.on_chunk(chunk)
