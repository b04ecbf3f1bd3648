"""
Tests for the /api/copilot and /api/credits endpoints.
"""

import base64
import json
import unittest

from fastapi.testclient import TestClient

from copilot.auth import TokenVerifier
from copilot.credits import InMemoryCreditLedger
from copilot.errors import AllProvidersFailed
from copilot.main import create_app
from copilot.providers.base import ChatProvider
from copilot.transcriber import Transcriber

AUTH = {"Authorization": "Bearer tok"}
WAV = b"RIFF" + b"\x00" * 60
IMAGE = "data:image/png;base64,iVBORw0KGgo="


class FakeProvider(ChatProvider):

    def __init__(self, name="fake", reply="Sure.", fail=False, configured=True, tokens=None, images=True):
        self.name = name
        self.reply = reply
        self.fail = fail
        self._configured = configured
        self.tokens = tokens
        self.supports_streaming = tokens is not None
        self.supports_images = images
        self.calls = []

    @property
    def configured(self):
        return self._configured

    async def generate(self, messages, *, max_tokens=1000, temperature=0.7):
        self.calls.append(messages)
        if self.fail:
            raise RuntimeError(f"{self.name} is down")
        return self.reply

    async def open_stream(self, messages, *, max_tokens=1000, temperature=0.7):
        self.calls.append(messages)
        if self.fail:
            raise RuntimeError(f"{self.name} stream refused")

        async def deltas():
            for t in self.tokens:
                yield t

        return deltas()


class FakeTranscriber(Transcriber):
    name = "fake"

    def __init__(self, text="tell me about yourself", error=None):
        self.text = text
        self.error = error
        self.calls = 0

    @property
    def configured(self):
        return True

    async def transcribe(self, audio, mime_type="audio/wav", filename="audio.wav"):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.text


def jwt(payload: dict) -> str:
    body = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")
    return f"e30.{body}.sig"


class ApiTestCase(unittest.TestCase):

    def make_client(self, balance=10, providers=None, transcriber=None, allow_unverified=False, **kwargs):
        self.ledger = InMemoryCreditLedger({"u1": balance})
        self.providers = providers if providers is not None else [FakeProvider("openai", tokens=["Hel", "lo"])]
        self.transcriber = transcriber or FakeTranscriber()
        app = create_app(
            ledger=self.ledger,
            verifier=TokenVerifier(tokens={"tok": "u1"}, allow_unverified=allow_unverified),
            chat_providers=self.providers,
            transcriber=self.transcriber,
            **kwargs,
        )
        return TestClient(app)

    def balance(self):
        return self.ledger._balances.get("u1")

    def transcribe(self, client, headers=AUTH, data=WAV):
        return client.post(
            "/api/copilot",
            data={"type": "transcribe"},
            files={"audio": ("qa-1.wav", data, "audio/wav")},
            headers=headers,
        )


class TestTranscribeEndpoint(ApiTestCase):

    def test_final_transcription_is_billed(self):
        client = self.make_client()
        r = self.transcribe(client)

        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json(), {"success": True, "transcript": "tell me about yourself", "remainingCredits": 8})
        self.assertEqual(self.balance(), 8)

    def test_interim_transcription_is_free(self):
        client = self.make_client()
        r = self.transcribe(client, headers={**AUTH, "x-interim": "true"})

        self.assertEqual(r.status_code, 200)
        self.assertIsNone(r.json()["remainingCredits"])
        self.assertEqual(self.balance(), 10)

    def test_oversized_interim_is_billed_as_final(self):
        client = self.make_client(max_interim_bytes=16)
        r = self.transcribe(client, headers={**AUTH, "x-interim": "true"})

        self.assertEqual(r.status_code, 200)
        self.assertEqual(self.balance(), 8)

    def test_requires_auth(self):
        client = self.make_client()
        r = self.transcribe(client, headers={})
        self.assertEqual(r.status_code, 401)
        self.assertEqual(self.transcriber.calls, 0)

    def test_final_without_credits_is_refused_before_transcribing(self):
        client = self.make_client(balance=1)
        r = self.transcribe(client)

        self.assertEqual(r.status_code, 402)
        self.assertEqual(self.transcriber.calls, 0)
        self.assertEqual(self.balance(), 1)

    def test_no_speech_is_not_billed(self):
        client = self.make_client(transcriber=FakeTranscriber(text="  "))
        r = self.transcribe(client)

        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json()["error"], "No speech detected")
        self.assertEqual(self.balance(), 10)

    def test_all_providers_failed(self):
        client = self.make_client(transcriber=FakeTranscriber(error=AllProvidersFailed()))
        r = self.transcribe(client)

        self.assertEqual(r.status_code, 500)
        self.assertEqual(r.json()["error"], "Transcription failed")
        self.assertEqual(self.balance(), 10)


class TestChatEndpoint(ApiTestCase):

    def chat(self, client, headers=AUTH, **body):
        payload = {"type": "chat", "message": "What is a closure?", "conversationHistory": []}
        payload.update(body)
        return client.post("/api/copilot", json=payload, headers=headers)

    def test_json_chat(self):
        client = self.make_client()
        r = self.chat(client)

        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json(), {"success": True, "response": "Sure.", "remainingCredits": 9})

    def test_streamed_chat(self):
        client = self.make_client()
        r = self.chat(client, stream=True)

        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.headers["content-type"].startswith("text/plain"))
        self.assertEqual(r.headers["x-remaining-credits"], "9")
        self.assertEqual(r.text, "Hello")

    def test_stream_failure_falls_back_to_json(self):
        broken = FakeProvider("openai", tokens=["x"], fail=True)
        backup = FakeProvider("gemini", reply="From backup.")
        client = self.make_client(providers=[broken, backup])
        r = self.chat(client, stream=True)

        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["response"], "From backup.")
        self.assertEqual(self.balance(), 9)

    def test_image_chat_with_one_credit_makes_no_ai_call(self):
        client = self.make_client(balance=1)
        r = self.chat(client, imageData=IMAGE)

        self.assertEqual(r.status_code, 402)
        self.assertEqual(self.providers[0].calls, [])
        self.assertEqual(self.balance(), 1)

    def test_image_chat_costs_four(self):
        client = self.make_client()
        r = self.chat(client, imageData=IMAGE)

        self.assertEqual(r.json()["remainingCredits"], 6)
        user_turn = self.providers[0].calls[0][-1]
        self.assertEqual(user_turn["content"][1]["image_url"]["url"], IMAGE)

    def test_image_fallback_provider_gets_text_only_messages(self):
        primary = FakeProvider("openai", fail=True)
        text_only = FakeProvider("gemini", reply="text answer", images=False)
        client = self.make_client(providers=[primary, text_only])
        r = self.chat(client, imageData=IMAGE)

        self.assertEqual(r.json()["response"], "text answer")
        self.assertIsInstance(text_only.calls[0][-1]["content"], str)

    def test_provider_failure_is_not_refunded(self):
        client = self.make_client(providers=[FakeProvider("openai", fail=True), FakeProvider("gemini", fail=True)])
        r = self.chat(client)

        self.assertEqual(r.status_code, 500)
        self.assertEqual(r.json()["error"], "Chat failed")
        self.assertEqual(self.balance(), 9)

    def test_no_configured_provider_is_not_billed(self):
        client = self.make_client(providers=[FakeProvider("openai", configured=False)])
        r = self.chat(client)

        self.assertEqual(r.status_code, 500)
        self.assertEqual(self.balance(), 10)

    def test_persona_and_history_reach_the_provider(self):
        client = self.make_client()
        history = [{"role": "user", "content": f"q{i}"} for i in range(30)]
        self.chat(
            client,
            conversationHistory=history,
            persona={"useCase": "interview", "userData": "Senior Go engineer at Acme"},
        )

        messages = self.providers[0].calls[0]
        self.assertIn("Senior Go engineer at Acme", messages[0]["content"])
        self.assertEqual(len(messages), 1 + 20 + 1)

    def test_requires_auth(self):
        client = self.make_client()
        self.assertEqual(self.chat(client, headers={}).status_code, 401)

    def test_dev_token_payload_outside_production(self):
        client = self.make_client(allow_unverified=True)
        r = self.chat(client, headers={"Authorization": f"Bearer {jwt({'user_id': 'u1'})}"})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(self.balance(), 9)


class TestOtherRequests(ApiTestCase):

    def test_setup_normalizes_without_auth(self):
        client = self.make_client()
        r = client.post("/api/copilot", json={"type": "setup", "useCase": "Interview", "userData": "x" * 2500})

        self.assertEqual(r.status_code, 200)
        persona = r.json()["persona"]
        self.assertEqual(persona["useCase"], "interview")
        self.assertTrue(persona["userData"].startswith("x" * 2000))
        self.assertIn("truncated", persona["userData"])

    def test_setup_validation(self):
        client = self.make_client()
        for body in ({"useCase": "dating", "userData": "hi"}, {"useCase": "sales", "userData": " "}, {}):
            r = client.post("/api/copilot", json={"type": "setup", **body})
            self.assertEqual(r.status_code, 400)
            self.assertEqual(r.json()["error"], "Missing useCase or userData")

    def test_analyze_session(self):
        client = self.make_client()
        history = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]

        self.assertEqual(client.post("/api/copilot", json={"type": "analyze_session", "history": history}).status_code, 401)
        r = client.post("/api/copilot", json={"type": "analyze_session", "history": history}, headers=AUTH)

        self.assertEqual(r.json(), {"success": True, "report": "Sure."})
        self.assertEqual(self.balance(), 10)

    def test_unknown_type(self):
        client = self.make_client()
        r = client.post("/api/copilot", json={"type": "dance"}, headers=AUTH)
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json()["error"], "Invalid request type")

    def test_credits_endpoint_initializes_from_plan(self):
        client = self.make_client()
        headers = {"Authorization": f"Bearer {jwt({'uid': 'new-user'})}"}
        self.assertEqual(client.get("/api/credits?plan=pro", headers=headers).status_code, 401)

        client = self.make_client(allow_unverified=True)
        self.assertEqual(client.get("/api/credits?plan=pro", headers=headers).json(), {"credits": 600})
        self.assertEqual(client.get("/api/credits", headers=AUTH).json(), {"credits": 10})

    def test_status(self):
        client = self.make_client()
        r = client.get("/api/copilot")
        self.assertEqual(r.json()["clients"], {"openai": True})
        self.assertTrue(r.json()["transcription"])


if __name__ == "__main__":
    unittest.main()
