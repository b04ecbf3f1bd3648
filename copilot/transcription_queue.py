"""Single-flight FIFO queue between the chunk recorder and the transcription backend."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Optional, Protocol, Set

from copilot.models import AudioChunk, TranscriptionJob

logger = logging.getLogger(__name__)


class TranscriptionBackend(Protocol):
    async def transcribe(self, chunk: AudioChunk) -> str: ...


class TranscriptionQueue:
    """
    Idle -> Processing -> Idle, guarded by `busy`.

    At most one transcription call is in flight. Final jobs are processed in
    arrival order and never dropped; only the newest interim job is kept.
    """

    def __init__(
        self,
        backend: TranscriptionBackend,
        on_utterance: Callable[[str], Any],
        on_live_transcript: Optional[Callable[[str], Any]] = None,
        on_transcribing_change: Optional[Callable[[bool], Any]] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
        on_settled: Optional[Callable[[], Any]] = None,
    ):
        self.backend = backend
        self.on_utterance = on_utterance
        self.on_live_transcript = on_live_transcript
        self.on_transcribing_change = on_transcribing_change
        self.on_error = on_error
        self.on_settled = on_settled

        self.busy = False
        self.live_transcript = ""
        self._jobs: Deque[TranscriptionJob] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._callbacks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._jobs)

    @property
    def pending(self) -> list[TranscriptionJob]:
        return list(self._jobs)

    def enqueue(self, job: TranscriptionJob) -> None:
        """Add a job; an interim job replaces any interim still waiting."""
        if not job.is_final:
            self._jobs = deque(j for j in self._jobs if j.is_final)
        self._jobs.append(job)
        if not self.busy and (self._worker is None or self._worker.done()):
            self._worker = asyncio.get_running_loop().create_task(self.process_next())

    def enqueue_chunk(self, chunk: AudioChunk) -> None:
        self.enqueue(TranscriptionJob(chunk=chunk))

    async def process_next(self) -> None:
        """Drain the queue one job at a time. Re-entrant calls return immediately."""
        if self.busy or not self._jobs:
            return
        self.busy = True
        try:
            while self._jobs:
                job = self._jobs.popleft()
                await self._process(job)
        finally:
            self.busy = False

    async def drain(self) -> None:
        """Wait until every queued job has been processed."""
        while self._worker is not None and not self._worker.done():
            await self._worker
        if self._callbacks:
            await asyncio.gather(*list(self._callbacks), return_exceptions=True)

    def reset_live_transcript(self) -> None:
        self.live_transcript = ""
        self._emit(self.on_live_transcript, "")

    async def _process(self, job: TranscriptionJob) -> None:
        if job.is_final:
            # Only the final pass shows the transcribing indicator
            self._emit(self.on_transcribing_change, True)

        try:
            text = (await self.backend.transcribe(job.chunk) or "").strip()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[TRANSCRIBE] Processing error (final=%s): %s", job.is_final, e)
            if job.is_final:
                self._emit(self.on_transcribing_change, False)
            self._emit(self.on_error, e)
            if job.is_final:
                self._emit(self.on_settled)
            return

        if job.is_final:
            self._emit(self.on_live_transcript, text)
            self._emit(self.on_transcribing_change, False)
            self.live_transcript = ""
            if text:
                self._emit(self.on_utterance, text)
            else:
                logger.info("[TRANSCRIBE] No speech detected in final chunk")
            self._emit(self.on_settled)
        elif text:
            self.live_transcript = f"{self.live_transcript} {text}".strip()
            self._emit(self.on_live_transcript, self.live_transcript)

    def _emit(self, callback: Optional[Callable[..., Any]], *args) -> None:
        """Run a callback; coroutine results become tasks so the queue never waits on them."""
        if callback is None:
            return
        result = callback(*args)
        if asyncio.iscoroutine(result):
            task = asyncio.get_running_loop().create_task(result)
            self._callbacks.add(task)
            task.add_done_callback(self._callbacks.discard)
