"""Wires capture, recording, transcription and chat into one co-pilot session."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from copilot.chat import ChatStreamClient
from copilot.client import CopilotApiClient
from copilot.credits import CreditCache
from copilot.errors import CopilotError, InsufficientCredits, NoAudioTrack, PermissionDenied, Unauthorized
from copilot.media import MediaAcquisition, MediaDevices, MixedStream
from copilot.models import ConversationTurn, PersonaConfig
from copilot.native import NativeRecognitionBridge, RecognitionEngine
from copilot.recorder import ChunkRecorder
from copilot.recording import RecordingController
from copilot.storage import LocalStorage, load_persona, save_profile
from copilot.transcription_queue import TranscriptionQueue

logger = logging.getLogger(__name__)

SCREENSHOT_QUESTION = "Please analyze this screenshot."

Notifier = Callable[[str, str], Any]


class CopilotSession:
    """
    One signed-in user's co-pilot: finalized utterances (from the server
    transcription queue or the native recognizer) become chat messages.

    `notify(level, message)` receives transient notices ("info", "success",
    "error") and blocking ones ("credits", "auth").
    """

    def __init__(
        self,
        api: CopilotApiClient,
        devices: MediaDevices,
        storage: LocalStorage,
        native_engine: Optional[RecognitionEngine] = None,
        notify: Optional[Notifier] = None,
        on_reply: Optional[Callable[[ConversationTurn], Any]] = None,
        on_live_transcript: Optional[Callable[[str], Any]] = None,
        plan: str = "free",
        **recorder_options,
    ):
        self.api = api
        self.storage = storage
        self.plan = plan
        self._notify_cb = notify
        self._on_live = on_live_transcript
        self.transcribing = False

        self.credits = CreditCache(lambda: api.get_credits(plan))
        self.chat = ChatStreamClient(
            api,
            storage=storage,
            credits=self.credits,
            persona=self.persona,
            on_update=on_reply,
            on_error=lambda e: self.notify("error", "Failed to get AI response"),
        )
        self.queue = TranscriptionQueue(
            api,
            on_utterance=self.handle_utterance,
            on_live_transcript=self._live,
            on_transcribing_change=self._set_transcribing,
            on_error=self._on_transcription_error,
            on_settled=self.credits.refresh,
        )
        self.recorder = ChunkRecorder(on_chunk=self.queue.enqueue_chunk, **recorder_options)
        native = None
        if native_engine is not None:
            native = NativeRecognitionBridge(
                native_engine,
                on_utterance=self.handle_utterance,
                on_live_transcript=self._live,
                on_error=lambda e: self.notify("error", f"Speech recognition error: {e}"),
            )
        self.recording = RecordingController(self.recorder, native, on_notify=self.notify)
        self.media = MediaAcquisition(devices, on_stream_available=self._on_stream)
        self.stream: Optional[MixedStream] = None

    def notify(self, level: str, message: str) -> None:
        log = logger.error if level in ("error", "credits", "auth") else logger.info
        log("[SESSION] %s: %s", level, message)
        if self._notify_cb is not None:
            self._notify_cb(level, message)

    def persona(self) -> Optional[PersonaConfig]:
        return load_persona(self.storage)

    async def setup_persona(self, use_case: str, primary: str, secondary: str = "") -> PersonaConfig:
        """Validate the persona with the server and remember it locally."""
        persona = await self.api.setup(PersonaConfig(use_case=use_case, user_data=primary))
        save_profile(self.storage, persona.use_case, persona.user_data, secondary)
        self.notify("success", "Persona configured successfully")
        return persona

    async def start_capture(self) -> Optional[MixedStream]:
        try:
            return await self.media.start_capture()
        except (PermissionDenied, NoAudioTrack) as e:
            self.notify("error", str(e))
            return None

    def stop_capture(self) -> None:
        self.media.stop_capture()

    def toggle_recording(self) -> Optional[str]:
        return self.recording.toggle(self.stream)

    def clear_context(self) -> bool:
        return self.recording.clear_context()

    async def handle_utterance(self, text: str) -> Optional[ConversationTurn]:
        """A finalized utterance from either transcription path becomes a question."""
        return await self.ask(text)

    async def ask(self, text: str, image_data: Optional[str] = None) -> Optional[ConversationTurn]:
        try:
            return await self.chat.send_message(text, image_data=image_data)
        except InsufficientCredits:
            self.notify("credits", "Not enough credits. Upgrade your plan to continue.")
        except Unauthorized:
            self.notify("auth", "Please sign in to continue.")
        return None

    async def ask_about_screen(self, question: str = SCREENSHOT_QUESTION) -> Optional[ConversationTurn]:
        image = await self.media.take_screenshot()
        if image is None:
            self.notify("info", "Share your screen first.")
            return None
        return await self.ask(question, image_data=image)

    async def analyze(self) -> Optional[str]:
        try:
            return await self.chat.analyze_session()
        except Unauthorized:
            self.notify("auth", "Please sign in to continue.")
        except CopilotError as e:
            self.notify("error", f"Analysis failed: {e}")
        return None

    async def refresh_credits(self) -> Optional[int]:
        return await self.credits.refresh()

    async def close(self) -> None:
        self.recording.stop()
        self.media.stop_capture()
        await self.queue.drain()
        await self.chat.wait_idle()

    def _on_stream(self, stream: Optional[MixedStream]) -> None:
        self.stream = stream
        self.recording.on_stream_changed(stream)

    def _live(self, text: str) -> None:
        if self._on_live is not None:
            self._on_live(text)

    def _set_transcribing(self, value: bool) -> None:
        self.transcribing = value

    def _on_transcription_error(self, exc: Exception) -> None:
        if isinstance(exc, InsufficientCredits):
            self.notify("credits", "Not enough credits to transcribe. Upgrade your plan to continue.")
        elif isinstance(exc, Unauthorized):
            self.notify("auth", "Please sign in to continue.")
        else:
            self.notify("error", "Transcription failed")
