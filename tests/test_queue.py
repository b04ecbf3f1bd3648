"""
Tests for the single-flight transcription queue.
"""

import asyncio
import unittest

from copilot.errors import AllProvidersFailed
from copilot.models import AudioChunk, TranscriptionJob
from copilot.transcription_queue import TranscriptionQueue


def job(label: str, final: bool) -> TranscriptionJob:
    return TranscriptionJob(chunk=AudioChunk(data=label.encode(), is_final=final))


class GatedBackend:
    """Backend whose calls block until released; records call order and overlap."""

    def __init__(self, results=None):
        self.results = results or {}
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.gate = asyncio.Event()

    async def transcribe(self, chunk: AudioChunk) -> str:
        label = chunk.data.decode()
        self.calls.append(label)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await self.gate.wait()
            result = self.results.get(label, label)
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.in_flight -= 1


class TestTranscriptionQueue(unittest.IsolatedAsyncioTestCase):

    def make_queue(self, backend):
        self.utterances = []
        self.live = []
        self.errors = []
        self.settled = 0
        self.transcribing = []

        def settled():
            self.settled += 1

        return TranscriptionQueue(
            backend,
            on_utterance=self.utterances.append,
            on_live_transcript=self.live.append,
            on_transcribing_change=self.transcribing.append,
            on_error=self.errors.append,
            on_settled=settled,
        )

    async def test_interim_eviction_keeps_newest_and_all_finals(self):
        backend = GatedBackend()
        queue = self.make_queue(backend)

        queue.enqueue(job("I1", final=False))
        await asyncio.sleep(0)  # I1 is now in flight
        queue.enqueue(job("I2", final=False))
        queue.enqueue(job("F1", final=True))
        queue.enqueue(job("I3", final=False))

        self.assertEqual([j.chunk.data.decode() for j in queue.pending], ["F1", "I3"])

        backend.gate.set()
        await queue.drain()

        self.assertEqual(backend.calls, ["I1", "F1", "I3"])
        self.assertEqual(backend.max_in_flight, 1)
        self.assertEqual(self.utterances, ["F1"])

    async def test_finals_processed_in_arrival_order(self):
        backend = GatedBackend()
        queue = self.make_queue(backend)

        for label in ("F1", "F2", "F3"):
            queue.enqueue(job(label, final=True))
        backend.gate.set()
        await queue.drain()

        self.assertEqual(backend.calls, ["F1", "F2", "F3"])
        self.assertEqual(self.utterances, ["F1", "F2", "F3"])
        self.assertEqual(self.settled, 3)

    async def test_empty_final_creates_no_utterance(self):
        backend = GatedBackend({"F1": "   "})
        backend.gate.set()
        queue = self.make_queue(backend)

        queue.enqueue(job("F1", final=True))
        await queue.drain()

        self.assertEqual(self.utterances, [])
        self.assertEqual(self.transcribing, [True, False])
        self.assertEqual(self.settled, 1)

    async def test_interim_text_builds_live_transcript(self):
        backend = GatedBackend({"I1": "hello", "I2": "world"})
        backend.gate.set()
        queue = self.make_queue(backend)

        queue.enqueue(job("I1", final=False))
        await queue.drain()
        queue.enqueue(job("I2", final=False))
        await queue.drain()

        self.assertEqual(queue.live_transcript, "hello world")
        self.assertEqual(self.live, ["hello", "hello world"])
        self.assertEqual(self.transcribing, [])
        self.assertEqual(self.utterances, [])

    async def test_failure_does_not_poison_the_queue(self):
        backend = GatedBackend({"F1": AllProvidersFailed(), "F2": "second"})
        backend.gate.set()
        queue = self.make_queue(backend)

        queue.enqueue(job("F1", final=True))
        queue.enqueue(job("F2", final=True))
        await queue.drain()

        self.assertEqual(len(self.errors), 1)
        self.assertIsInstance(self.errors[0], AllProvidersFailed)
        self.assertEqual(self.utterances, ["second"])
        self.assertFalse(queue.busy)

    async def test_async_utterance_callback_is_not_awaited_inline(self):
        backend = GatedBackend()
        backend.gate.set()
        seen = []
        release = asyncio.Event()

        async def on_utterance(text):
            await release.wait()
            seen.append(text)

        queue = TranscriptionQueue(backend, on_utterance=on_utterance)
        queue.enqueue(job("F1", final=True))
        queue.enqueue(job("F2", final=True))
        while queue.busy or len(queue):
            await asyncio.sleep(0)

        self.assertEqual(backend.calls, ["F1", "F2"])
        release.set()
        await queue.drain()
        self.assertEqual(sorted(seen), ["F1", "F2"])

    async def test_process_next_is_reentrant_safe(self):
        backend = GatedBackend()
        queue = self.make_queue(backend)

        queue.enqueue(job("F1", final=True))
        await asyncio.sleep(0)
        await queue.process_next()  # busy: returns immediately

        self.assertEqual(backend.calls, ["F1"])
        backend.gate.set()
        await queue.drain()


if __name__ == "__main__":
    unittest.main()
