"""On-device speech recognition, used instead of server transcription when available."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from copilot.config import Config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecognitionResult:
    transcript: str
    is_final: bool


class RecognitionEngine(ABC):
    """
    A continuous recognizer. Results, end and error are reported through
    the `on_result` / `on_end` / `on_error` hooks, always on the event loop.
    """

    def __init__(self):
        self.on_result: Optional[Callable[[List[RecognitionResult]], None]] = None
        self.on_end: Optional[Callable[[], None]] = None
        self.on_error: Optional[Callable[[Exception], None]] = None

    @abstractmethod
    def start(self) -> None:
        pass

    @abstractmethod
    def stop(self) -> None:
        pass

    def _fire_result(self, results: List[RecognitionResult]) -> None:
        if self.on_result is not None:
            self.on_result(results)

    def _fire_end(self) -> None:
        if self.on_end is not None:
            self.on_end()

    def _fire_error(self, exc: Exception) -> None:
        if self.on_error is not None:
            self.on_error(exc)


class NativeRecognitionBridge:
    """
    Stopped <-> Listening. While listening, an engine-initiated end is
    followed by an immediate restart; only `stop()` ends the session.
    """

    def __init__(
        self,
        engine: RecognitionEngine,
        on_utterance: Callable[[str], Any],
        on_live_transcript: Optional[Callable[[str], Any]] = None,
        on_listening_change: Optional[Callable[[bool], Any]] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
    ):
        self.engine = engine
        self.on_utterance = on_utterance
        self.on_live_transcript = on_live_transcript
        self.on_listening_change = on_listening_change
        self.on_error = on_error

        self.state = "stopped"
        self.restarts = 0
        self._final_text = ""
        self._interim_text = ""

        engine.on_result = self._on_result
        engine.on_end = self._on_end
        engine.on_error = self._on_error

    @property
    def listening(self) -> bool:
        return self.state == "listening"

    @property
    def live_transcript(self) -> str:
        parts = (self._final_text.strip(), self._interim_text.strip())
        return " ".join(p for p in parts if p)

    def start(self) -> None:
        if self.listening:
            return
        self._final_text = ""
        self._interim_text = ""
        self.restarts = 0
        self.state = "listening"
        self.engine.start()
        logger.info("[NATIVE] Listening")
        self._call(self.on_listening_change, True)

    def stop(self) -> None:
        """End the session; everything heard so far becomes one utterance."""
        if not self.listening:
            return
        self.state = "stopped"
        self.engine.stop()

        text = self.live_transcript
        self._final_text = ""
        self._interim_text = ""
        logger.info("[NATIVE] Stopped after %d restart(s)", self.restarts)
        self._call(self.on_listening_change, False)
        self._call(self.on_live_transcript, "")
        if text:
            self._call(self.on_utterance, text)

    def _on_result(self, results: List[RecognitionResult]) -> None:
        if not self.listening:
            return
        interim = ""
        for r in results:
            if r.is_final:
                self._final_text += r.transcript + " "
            else:
                interim += r.transcript
        self._interim_text = interim
        self._call(self.on_live_transcript, self.live_transcript)

    def _on_end(self) -> None:
        if not self.listening:
            return
        # The engine gave up on its own (silence, session limit); keep going
        self.restarts += 1
        logger.debug("[NATIVE] Engine ended, restarting (#%d)", self.restarts)
        try:
            self.engine.start()
        except Exception as e:
            self._on_error(e)

    def _on_error(self, exc: Exception) -> None:
        logger.error("[NATIVE] Recognition error: %s", exc)
        if self.listening:
            self.state = "stopped"
            self.engine.stop()
            self._call(self.on_listening_change, False)
        self._call(self.on_error, exc)

    def _call(self, callback: Optional[Callable[..., Any]], *args) -> None:
        if callback is None:
            return
        result = callback(*args)
        if asyncio.iscoroutine(result):
            asyncio.get_running_loop().create_task(result)


class VoskRecognitionEngine(RecognitionEngine):
    """
    Offline recognizer: vosk KaldiRecognizer fed from a sounddevice raw
    input stream on a worker thread. Sessions end by themselves after
    `max_session_s`, like browser recognizers do.
    """

    def __init__(
        self,
        model_path: Optional[str] = None,
        device=None,
        sample_rate: Optional[int] = None,
        max_session_s: Optional[float] = None,
    ):
        super().__init__()
        self.model_path = model_path or Config.VOSK_MODEL_PATH
        self.device = device if device is not None else Config.MIC_DEVICE
        self.sample_rate = int(sample_rate or Config.SAMPLE_RATE)
        self.max_session_s = float(max_session_s or Config.NATIVE_MAX_SESSION_SECONDS)
        self._model = None
        self._stop_evt: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @staticmethod
    def available(model_path: Optional[str] = None) -> bool:
        path = model_path or Config.VOSK_MODEL_PATH
        if not path or not os.path.isdir(path):
            return False
        try:
            import vosk  # noqa: F401
            import sounddevice  # noqa: F401
        except (ImportError, OSError):
            return False
        return True

    def start(self) -> None:
        import vosk

        if self._model is None:
            vosk.SetLogLevel(-1)
            self._model = vosk.Model(self.model_path)
        loop = asyncio.get_running_loop()
        recognizer = vosk.KaldiRecognizer(self._model, self.sample_rate)
        self._stop_evt = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(recognizer, loop, self._stop_evt), daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        if self._stop_evt is not None:
            self._stop_evt.set()
            self._stop_evt = None

    def _run(self, recognizer, loop: asyncio.AbstractEventLoop, stop_evt: threading.Event) -> None:
        import sounddevice as sd

        audio_q: "queue.Queue[bytes]" = queue.Queue()

        def callback(indata, frames, time_info, status):
            audio_q.put(bytes(indata))

        def post(text: str, is_final: bool) -> None:
            results = [RecognitionResult(text, is_final)]
            loop.call_soon_threadsafe(self._deliver, stop_evt, False, self._fire_result, results)

        started = time.monotonic()
        last_partial = ""
        try:
            with sd.RawInputStream(
                samplerate=self.sample_rate,
                blocksize=8000,
                device=self.device,
                dtype="int16",
                channels=1,
                callback=callback,
            ):
                while not stop_evt.is_set():
                    if time.monotonic() - started >= self.max_session_s:
                        break
                    try:
                        data = audio_q.get(timeout=0.1)
                    except queue.Empty:
                        continue
                    if recognizer.AcceptWaveform(data):
                        text = json.loads(recognizer.Result()).get("text", "")
                        last_partial = ""
                        if text:
                            post(text, True)
                    else:
                        partial = json.loads(recognizer.PartialResult()).get("partial", "")
                        if partial and partial != last_partial:
                            last_partial = partial
                            post(partial, False)

            text = json.loads(recognizer.FinalResult()).get("text", "")
            if text:
                post(text, True)
        except Exception as e:
            loop.call_soon_threadsafe(self._deliver, stop_evt, True, self._fire_error, e)
            return

        loop.call_soon_threadsafe(self._deliver, stop_evt, True, self._fire_end)

    def _deliver(self, stop_evt: threading.Event, terminal: bool, fire: Callable[..., None], *args) -> None:
        # Events from a session that was already stopped are dropped
        if stop_evt is not self._stop_evt:
            return
        if terminal:
            self._stop_evt = None
        fire(*args)
