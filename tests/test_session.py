"""
End-to-end session flow with fake devices and a fake API.
"""

import os
import tempfile
import unittest

import numpy as np

from copilot.errors import InsufficientCredits, PermissionDenied
from copilot.media import MediaDevices, MediaStream, MediaTrack
from copilot.models import PersonaConfig
from copilot.session import CopilotSession
from copilot.storage import LocalStorage


class Devices(MediaDevices):

    def __init__(self):
        self.tab = None

    async def get_display_media(self, video=True, audio=True):
        self.tab = MediaTrack("audio", "tab", sample_rate=self.sample_rate)
        return MediaStream([self.tab])

    async def get_user_media(self, audio=True):
        raise PermissionDenied("Permission denied")


class Api:

    def __init__(self, transcript="What is your biggest weakness?", chat_error=None):
        self.transcript = transcript
        self.chat_error = chat_error
        self.chunks = []
        self.questions = []
        self.balance = 10

    async def transcribe(self, chunk):
        self.chunks.append(chunk)
        return self.transcript

    async def stream_chat(self, message, history, image_data=None, persona=None, on_accepted=None):
        self.questions.append((message, persona))
        if self.chat_error is not None:
            raise self.chat_error
        self.balance -= 1
        on_accepted(self.balance)
        yield "I focus too much on detail."

    async def get_credits(self, plan="free"):
        return self.balance

    async def setup(self, persona):
        return persona


class TestCopilotSession(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.storage = LocalStorage(os.path.join(self.temp_dir.name, "storage.json"))
        self.notices = []

    def tearDown(self):
        self.temp_dir.cleanup()

    def make_session(self, api):
        self.devices = Devices()
        return CopilotSession(
            api, self.devices, self.storage,
            notify=lambda level, msg: self.notices.append((level, msg)),
            chunk_seconds=3,
        )

    async def test_recorded_question_gets_an_answer(self):
        api = Api()
        session = self.make_session(api)
        await session.setup_persona("interview", "Backend engineer, 5 years")

        await session.start_capture()
        self.assertEqual(session.toggle_recording(), "server")
        self.devices.tab.push(np.full(1600, 0.1, dtype=np.float32))
        self.assertIsNone(session.toggle_recording())
        await session.close()

        self.assertEqual([c.is_final for c in api.chunks], [True])
        message, persona = api.questions[0]
        self.assertEqual(message, "What is your biggest weakness?")
        self.assertEqual(persona, PersonaConfig(use_case="interview", user_data="Backend engineer, 5 years"))
        self.assertEqual(session.chat.turns[-1].content, "I focus too much on detail.")
        self.assertEqual(session.credits.credits, 9)

    async def test_capture_loss_finalizes_recording(self):
        api = Api()
        session = self.make_session(api)
        await session.start_capture()
        session.toggle_recording()
        self.devices.tab.push(np.full(1600, 0.1, dtype=np.float32))

        session.stop_capture()
        await session.close()

        self.assertFalse(session.recording.recording)
        self.assertEqual(len(api.questions), 1)

    async def test_out_of_credits_is_a_blocking_notice(self):
        session = self.make_session(Api(chat_error=InsufficientCredits()))
        self.assertIsNone(await session.ask("hello"))
        self.assertEqual(self.notices[-1][0], "credits")
        self.assertEqual(session.chat.turns, [])

    async def test_toggle_without_capture_or_native(self):
        session = self.make_session(Api())
        self.assertIsNone(session.toggle_recording())
        self.assertEqual(self.notices[-1][0], "error")

    async def test_screenshot_requires_shared_screen(self):
        session = self.make_session(Api())
        self.assertIsNone(await session.ask_about_screen())
        self.assertEqual(self.notices[-1], ("info", "Share your screen first."))


if __name__ == "__main__":
    unittest.main()
