"""Chooses between on-device recognition and server transcription for one recording."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from copilot.errors import NoAudioTrack
from copilot.media import MediaStream
from copilot.native import NativeRecognitionBridge
from copilot.recorder import ChunkRecorder

logger = logging.getLogger(__name__)

MODE_NATIVE = "native"
MODE_SERVER = "server"


class RecordingController:
    """Toggle recording on and off.

    Native recognition is used when it is available and no captured stream
    is provided; with a stream the chunk recorder feeds server transcription.
    """

    def __init__(
        self,
        recorder: ChunkRecorder,
        native: Optional[NativeRecognitionBridge] = None,
        on_notify: Optional[Callable[[str, str], Any]] = None,
    ):
        self.recorder = recorder
        self.native = native
        self.on_notify = on_notify

    @property
    def mode(self) -> Optional[str]:
        if self.native is not None and self.native.listening:
            return MODE_NATIVE
        if self.recorder.recording:
            return MODE_SERVER
        return None

    @property
    def recording(self) -> bool:
        return self.mode is not None

    def toggle(self, stream: Optional[MediaStream] = None) -> Optional[str]:
        """Stop whatever is running, or start the best available mode.

        Returns:
            The mode that was started, or None when recording stopped (or could not start)
        """
        if self.native is not None and self.native.listening:
            self.native.stop()
            return None
        if self.recorder.recording:
            self.recorder.stop()
            return None

        has_audio = stream is not None and bool(stream.audio_tracks())
        if self.native is not None and not has_audio:
            self.native.start()
            return MODE_NATIVE

        if not has_audio:
            self._notify("error", 'No tab audio – did you pick "Share tab audio"?')
            return None
        try:
            self.recorder.start(stream)
        except NoAudioTrack as e:
            self._notify("error", str(e))
            return None
        logger.info("[RECORDING] Server transcription mode")
        return MODE_SERVER

    def stop(self) -> None:
        if self.native is not None:
            self.native.stop()
        self.recorder.stop()

    def clear_context(self) -> bool:
        """Discard the audio recorded so far without stopping."""
        if not self.recorder.recording:
            self._notify("info", "Start listening first.")
            return False
        self.recorder.reset()
        self._notify("success", "Context cleared")
        return True

    def on_stream_changed(self, stream: Optional[MediaStream]) -> None:
        # Capture went away mid-recording: finish with what was recorded
        if stream is None and self.recorder.recording:
            logger.info("[RECORDING] Stream gone, finalizing recording")
            self.recorder.stop()

    def _notify(self, level: str, message: str) -> None:
        if self.on_notify is not None:
            self.on_notify(level, message)
