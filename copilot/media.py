"""Media acquisition: display + microphone capture mixed into one audio stream."""

from __future__ import annotations

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from copilot.config import Config
from copilot.errors import NoAudioTrack, PermissionDenied

logger = logging.getLogger(__name__)

AudioListener = Callable[[np.ndarray], None]


def to_mono_float32(indata: np.ndarray) -> np.ndarray:
    """
    Convert a sounddevice callback block into mono float32 in [-1, 1].
    Uses LEFT channel only (avoids phase-cancellation artifacts from stereo system audio).
    """
    x = np.asarray(indata)

    if x.ndim == 2 and x.shape[1] >= 1:
        mono = x[:, 0]
    else:
        mono = x.reshape(-1)

    if mono.dtype == np.int16:
        return mono.astype(np.float32) / 32768.0
    return mono.astype(np.float32)


def to_pcm16(samples: np.ndarray) -> bytes:
    """float32 samples -> PCM16 little-endian bytes (clipped)."""
    f = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (f * 32767.0).astype("<i2").tobytes(order="C")


class MediaTrack:
    """One audio or video source. `stop()` releases the device exactly once."""

    def __init__(
        self,
        kind: str,
        label: str = "",
        sample_rate: Optional[int] = None,
        on_release: Optional[Callable[[], None]] = None,
    ):
        self.kind = kind  # "audio" | "video"
        self.label = label
        self.sample_rate = sample_rate
        self.ready_state = "live"
        self._on_release = on_release
        self._listeners: List[AudioListener] = []
        self._ended_listeners: List[Callable[["MediaTrack"], None]] = []

    def __repr__(self) -> str:
        return f"<MediaTrack {self.kind} {self.label!r} {self.ready_state}>"

    @property
    def live(self) -> bool:
        return self.ready_state == "live"

    def add_listener(self, listener: AudioListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: AudioListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_ended_listener(self, listener: Callable[["MediaTrack"], None]) -> None:
        self._ended_listeners.append(listener)

    def remove_ended_listener(self, listener: Callable[["MediaTrack"], None]) -> None:
        if listener in self._ended_listeners:
            self._ended_listeners.remove(listener)

    def push(self, block: np.ndarray) -> None:
        """Deliver one audio block to every listener (event-loop thread only)."""
        if not self.live:
            return
        for listener in list(self._listeners):
            listener(block)

    def _release(self) -> None:
        self.ready_state = "ended"
        self._listeners.clear()
        if self._on_release is not None:
            release, self._on_release = self._on_release, None
            release()

    def stop(self) -> None:
        """Explicit stop. Does not fire "ended" listeners."""
        if not self.live:
            return
        self._release()

    def end(self) -> None:
        """The source went away on its own (device unplugged, sharing revoked)."""
        if not self.live:
            return
        self._release()
        for listener in list(self._ended_listeners):
            listener(self)


class VideoTrack(MediaTrack):
    """Screen video for preview and screenshots; never sent to transcription."""

    def __init__(self, label: str = "screen", grabber: Optional[Callable[[], bytes]] = None, on_release=None):
        super().__init__("video", label, on_release=on_release)
        self._grabber = grabber

    def grab_png(self) -> bytes:
        if not self.live or self._grabber is None:
            raise RuntimeError("Video track is not live")
        return self._grabber()


class MediaStream:
    def __init__(self, tracks: Optional[List[MediaTrack]] = None):
        self.tracks: List[MediaTrack] = list(tracks or [])

    def audio_tracks(self) -> List[MediaTrack]:
        return [t for t in self.tracks if t.kind == "audio"]

    def video_tracks(self) -> List[MediaTrack]:
        return [t for t in self.tracks if t.kind == "video"]

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()


class MixedStream(MediaStream):
    """The single mixed audio track, plus display video kept aside for preview."""

    def __init__(self, audio: MediaTrack, preview: Optional[List[MediaTrack]] = None):
        super().__init__([audio])
        self.preview_tracks: List[MediaTrack] = list(preview or [])

    @property
    def audio(self) -> MediaTrack:
        return self.tracks[0]


class AudioMixer:
    """
    Audio graph with one summing node: every connected source is an input,
    `output` carries the float32 sum. Sources are aligned sample-by-sample;
    a source that falls more than `max_lag_s` behind is treated as silence.
    """

    def __init__(self, sample_rate: int, max_lag_s: float = 0.5):
        self.sample_rate = int(sample_rate)
        self.output = MediaTrack("audio", "mixed", sample_rate=self.sample_rate)
        self._max_lag = int(self.sample_rate * max_lag_s)
        self._inputs: Dict[MediaTrack, Tuple[np.ndarray, AudioListener]] = {}

    @property
    def inputs(self) -> List[MediaTrack]:
        return list(self._inputs)

    def connect(self, track: MediaTrack) -> None:
        if track.kind != "audio":
            raise ValueError("only audio tracks can feed the mixer")
        if track.sample_rate and track.sample_rate != self.sample_rate:
            raise ValueError(f"sample rate mismatch: {track.sample_rate} != {self.sample_rate}")

        def listener(block: np.ndarray, _track=track) -> None:
            self._on_block(_track, block)

        self._inputs[track] = (np.zeros(0, dtype=np.float32), listener)
        track.add_listener(listener)
        track.add_ended_listener(self.disconnect)

    def disconnect(self, track: MediaTrack) -> None:
        entry = self._inputs.pop(track, None)
        if entry is not None:
            track.remove_listener(entry[1])

    def _on_block(self, track: MediaTrack, block: np.ndarray) -> None:
        pending, listener = self._inputs[track]
        self._inputs[track] = (np.concatenate([pending, np.asarray(block, dtype=np.float32).reshape(-1)]), listener)

        lengths = [len(buf) for buf, _ in self._inputs.values()]
        n = min(lengths)
        if n == 0 and max(lengths) > self._max_lag:
            n = max(lengths)
        if n == 0:
            return

        mixed = np.zeros(n, dtype=np.float32)
        for t, (buf, lst) in list(self._inputs.items()):
            take = buf[:n]
            mixed[: len(take)] += take
            self._inputs[t] = (buf[len(take):], lst)
        self.output.push(mixed)


class MediaDevices(ABC):
    """Access to OS capture sources."""

    sample_rate: int = 16000

    @abstractmethod
    async def get_display_media(self, video: bool = True, audio: bool = True) -> MediaStream:
        """Screen (video) plus system/tab audio. Raises PermissionDenied when refused."""
        pass

    @abstractmethod
    async def get_user_media(self, audio: bool = True) -> MediaStream:
        """Microphone audio. Raises PermissionDenied when refused or missing."""
        pass


class MediaSession:
    """Everything acquired by one start_capture; released as a unit."""

    def __init__(self, display: MediaStream, mic: Optional[MediaStream], mixer: AudioMixer, mixed: MixedStream):
        self.display = display
        self.mic = mic
        self.mixer = mixer
        self.mixed = mixed
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.display.stop()
        if self.mic is not None:
            self.mic.stop()
        self.mixed.stop()


class MediaAcquisition:
    """Owns at most one MediaSession at a time."""

    def __init__(
        self,
        devices: MediaDevices,
        on_stream_available: Optional[Callable[[Optional[MixedStream]], Any]] = None,
    ):
        self.devices = devices
        self.on_stream_available = on_stream_available
        self._session: Optional[MediaSession] = None
        self._watched: List[MediaTrack] = []

    @property
    def capturing(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> Optional[MediaSession]:
        return self._session

    async def start_capture(self) -> MixedStream:
        """Acquire display capture and (optionally) the microphone, then mix their audio.

        Raises:
            PermissionDenied: Display capture was refused
            NoAudioTrack: Neither source produced audio
        """
        if self._session is not None:
            self.stop_capture()

        try:
            display = await self.devices.get_display_media(video=True, audio=True)
        except PermissionDenied:
            raise
        except Exception as e:
            raise PermissionDenied(f"Screen capture failed: {e}") from e

        mic: Optional[MediaStream] = None
        try:
            mic = await self.devices.get_user_media(audio=True)
        except Exception as e:
            # Mic might be blocked; continue with tab/system audio only
            logger.warning("[MEDIA] Microphone not available, proceeding with tab audio only: %s", e)

        sources = (mic.audio_tracks() if mic else []) + display.audio_tracks()
        if not sources:
            display.stop()
            if mic is not None:
                mic.stop()
            raise NoAudioTrack()

        mixer = AudioMixer(sources[0].sample_rate or self.devices.sample_rate)
        try:
            for track in sources:
                mixer.connect(track)
        except Exception:
            for track in mixer.inputs:
                mixer.disconnect(track)
            display.stop()
            if mic is not None:
                mic.stop()
            raise

        mixed = MixedStream(mixer.output, display.video_tracks())
        self._session = MediaSession(display, mic, mixer, mixed)

        # OS-level stop (sharing revoked) takes the same teardown path; display
        # audio is only watched when there is no video track
        self._watched = display.video_tracks() or display.audio_tracks()
        for track in self._watched:
            track.add_ended_listener(self._on_track_ended)

        logger.info(
            "[MEDIA] Capture started: %d audio source(s), %d video track(s)",
            len(sources), len(mixed.preview_tracks),
        )
        self._notify(mixed)
        return mixed

    def stop_capture(self) -> None:
        """Release every acquired track. Safe to call at any time, any number of times."""
        session = self._session
        if session is None:
            return
        self._session = None
        for track in self._watched:
            track.remove_ended_listener(self._on_track_ended)
        self._watched = []
        session.release()
        logger.info("[MEDIA] Capture stopped")
        self._notify(None)

    def external_stop(self) -> bool:
        """Stop requested from outside (e.g. the meeting disconnected)."""
        if not self.capturing:
            return False
        self.stop_capture()
        return True

    def _on_track_ended(self, track: MediaTrack) -> None:
        logger.info("[MEDIA] %s ended by the system", track)
        self.stop_capture()

    def _notify(self, stream: Optional[MixedStream]) -> None:
        if self.on_stream_available is not None:
            self.on_stream_available(stream)

    async def take_screenshot(self) -> Optional[str]:
        """PNG data URL of the shared screen, or None when nothing is shared."""
        if self._session is None:
            return None
        videos = [t for t in self._session.mixed.preview_tracks if isinstance(t, VideoTrack) and t.live]
        if not videos:
            return None
        png = await asyncio.to_thread(videos[0].grab_png)
        return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


class SoundDeviceMediaDevices(MediaDevices):
    """
    sounddevice input streams for the microphone and a loopback/monitor
    device standing in for tab audio; mss for the screen video track.
    """

    def __init__(
        self,
        mic_device=None,
        loopback_device=None,
        sample_rate: Optional[int] = None,
        blocksize: int = 1600,  # 100ms @ 16k
        capture_video: bool = True,
    ):
        self.mic_device = mic_device if mic_device is not None else Config.MIC_DEVICE
        self.loopback_device = loopback_device if loopback_device is not None else Config.LOOPBACK_DEVICE
        self.sample_rate = int(sample_rate or Config.SAMPLE_RATE)
        self.blocksize = int(blocksize)
        self.capture_video = capture_video

    async def get_user_media(self, audio: bool = True) -> MediaStream:
        if not audio:
            return MediaStream()
        track = await self._open_input(self.mic_device, "microphone")
        return MediaStream([track])

    async def get_display_media(self, video: bool = True, audio: bool = True) -> MediaStream:
        tracks: List[MediaTrack] = []
        if video and self.capture_video:
            tracks.append(await asyncio.to_thread(self._open_screen))
        if audio and self.loopback_device is not None:
            try:
                tracks.append(await self._open_input(self.loopback_device, "display audio"))
            except PermissionDenied as e:
                # Same as sharing a screen without ticking "Share tab audio"
                logger.warning("[MEDIA] Display audio unavailable: %s", e)
        if not tracks:
            raise PermissionDenied("Nothing to capture: no screen and no loopback device")
        return MediaStream(tracks)

    def _open_screen(self) -> VideoTrack:
        import mss
        import mss.tools

        try:
            with mss.mss() as sct:
                if len(sct.monitors) < 2:
                    raise PermissionDenied("No monitor available for screen capture")
        except mss.exception.ScreenShotError as e:
            raise PermissionDenied(f"Screen capture refused: {e}") from e

        def grab() -> bytes:
            with mss.mss() as sct:
                shot = sct.grab(sct.monitors[1])
                return mss.tools.to_png(shot.rgb, shot.size)

        return VideoTrack("screen", grabber=grab)

    async def _open_input(self, device, label: str) -> MediaTrack:
        import sounddevice as sd

        loop = asyncio.get_running_loop()
        track = MediaTrack("audio", label, sample_rate=self.sample_rate)

        def audio_cb(indata, frames, time_info, status):
            if status:
                logger.debug("[MEDIA] %s status: %s", label, status)
            block = to_mono_float32(indata.copy())
            loop.call_soon_threadsafe(track.push, block)

        def finished_cb():
            loop.call_soon_threadsafe(track.end)

        def open_stream():
            info = sd.query_devices(device, "input")
            channels = max(1, min(2, int(info.get("max_input_channels", 1))))
            stream = sd.InputStream(
                device=device,
                samplerate=self.sample_rate,
                channels=channels,
                dtype="float32",
                blocksize=self.blocksize,
                callback=audio_cb,
                finished_callback=finished_cb,
            )
            stream.start()
            return stream

        try:
            stream = await asyncio.to_thread(open_stream)
        except (sd.PortAudioError, ValueError) as e:
            raise PermissionDenied(f"{label} unavailable: {e}") from e

        def release():
            try:
                stream.stop()
            finally:
                stream.close()

        track._on_release = release
        logger.info("[MEDIA] Opened %s (device=%s, sr=%d)", label, device, self.sample_rate)
        return track


def list_audio_devices() -> Dict[str, Any]:
    """
    Returns available INPUT audio devices.
    Used by the CLI for device selection.
    """
    import sounddevice as sd

    devices = []
    try:
        for idx, d in enumerate(sd.query_devices()):
            if int(d.get("max_input_channels", 0)) <= 0:
                continue
            devices.append(
                {
                    "index": idx,
                    "name": d.get("name", f"Device {idx}"),
                    "max_input_channels": int(d.get("max_input_channels", 0)),
                    "default_samplerate": int(d.get("default_samplerate", 0) or 0),
                }
            )
    except Exception as e:
        return {"ok": False, "error": repr(e), "devices": []}

    return {"ok": True, "devices": devices}
