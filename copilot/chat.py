"""Conversation state and the streaming chat exchange with the co-pilot API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Set

from copilot.client import CopilotApiClient
from copilot.credits import CreditCache, cost
from copilot.errors import InsufficientCredits, ProviderError
from copilot.models import ConversationTurn, PersonaConfig
from copilot.prompt import HISTORY_WINDOW
from copilot.storage import HISTORY_KEY, LocalStorage

logger = logging.getLogger(__name__)

FAILED_REPLY = "Sorry, I encountered an error. Please try again."


class ChatStreamClient:
    """
    Owns the conversation. At most one chat request is in flight: a new
    `send_message` cancels the previous one, whose partial reply is dropped.
    """

    def __init__(
        self,
        api: CopilotApiClient,
        storage: Optional[LocalStorage] = None,
        credits: Optional[CreditCache] = None,
        persona: Optional[Callable[[], Optional[PersonaConfig]]] = None,
        on_update: Optional[Callable[[ConversationTurn], Any]] = None,
        on_thinking_change: Optional[Callable[[bool], Any]] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
    ):
        self.api = api
        self.storage = storage
        self.credits = credits
        self.persona = persona
        self.on_update = on_update
        self.on_thinking_change = on_thinking_change
        self.on_error = on_error

        self.turns: List[ConversationTurn] = self._load_history()
        self.in_progress: Optional[ConversationTurn] = None
        self._current: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    def _load_history(self) -> List[ConversationTurn]:
        if self.storage is None:
            return []
        raw = self.storage.get(HISTORY_KEY) or []
        if not isinstance(raw, list):
            return []
        return [ConversationTurn.from_dict(t) for t in raw if isinstance(t, dict)]

    def _save_history(self) -> None:
        if self.storage is not None:
            self.storage.set(HISTORY_KEY, [t.to_dict() for t in self.turns])

    def history(self, limit: int = HISTORY_WINDOW) -> List[dict]:
        """The last `limit` successful turns as {role, content} pairs."""
        turns = [t for t in self.turns if not t.failed and t.content]
        return [t.to_history() for t in turns[-limit:]]

    @property
    def busy(self) -> bool:
        return self._current is not None and not self._current.done()

    async def send_message(self, text: str, image_data: Optional[str] = None) -> Optional[ConversationTurn]:
        """Ask the assistant; returns the finished assistant turn.

        Returns None when the text is blank or the request was superseded.

        Raises:
            InsufficientCredits: The cached balance or the server refused the cost
            Unauthorized: No valid session
        """
        if not text or not text.strip():
            return None

        previous = self._current
        if previous is not None and not previous.done():
            # Mark as superseded before cancelling so the old caller stays silent
            self._current = None
            previous.cancel()
            await asyncio.wait([previous])

        amount = cost("chat", has_image=bool(image_data))
        if self.credits is not None and not self.credits.has_enough(amount):
            raise InsufficientCredits(remaining=self.credits.credits)

        task = asyncio.get_running_loop().create_task(self._exchange(text.strip(), image_data, amount))
        self._current = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._current is not task and not _cancelling():
                logger.debug("[CHAT] Superseded request discarded")
                return None
            raise
        finally:
            if self._current is task:
                self._current = None

    async def _exchange(self, text: str, image_data: Optional[str], amount: int) -> ConversationTurn:
        history = self.history()
        persona = self.persona() if self.persona is not None else None
        user_turn = ConversationTurn(role="user", content=text, image_data=image_data)
        reply: Optional[ConversationTurn] = None

        def accepted(remaining: Optional[int]) -> None:
            nonlocal reply
            reply = ConversationTurn(role="assistant", content="")
            self.turns.append(user_turn)
            self.turns.append(reply)
            self.in_progress = reply
            if self.credits is not None:
                self.credits.apply_optimistic(amount)
                self.credits.settle(remaining)

        self._call(self.on_thinking_change, True)
        first = True
        try:
            async for piece in self.api.stream_chat(
                text, history, image_data=image_data, persona=persona, on_accepted=accepted
            ):
                if first:
                    first = False
                    self._call(self.on_thinking_change, False)
                reply.content += piece
                self._call(self.on_update, reply)
            if reply is None:
                raise ProviderError("Chat request was not accepted")

        except asyncio.CancelledError:
            if reply is not None and reply in self.turns:
                self.turns.remove(reply)
            raise

        except ProviderError as e:
            logger.error("[CHAT] Chat failed: %s", e)
            if reply is None:
                self.turns.append(user_turn)
                reply = ConversationTurn(role="assistant", content="")
                self.turns.append(reply)
            reply.failed = True
            if not reply.content:
                reply.content = FAILED_REPLY
            self._call(self.on_error, e)

        finally:
            self.in_progress = None
            self._call(self.on_thinking_change, False)
            if reply is not None and reply in self.turns:
                self._save_history()
                self._refresh_credits()

        if not reply.content.strip():
            reply.failed = True
            reply.content = FAILED_REPLY
            self._save_history()
        self._call(self.on_update, reply)
        return reply

    def cancel(self) -> None:
        """Abort the in-flight request, if any; its partial reply is dropped."""
        task, self._current = self._current, None
        if task is not None and not task.done():
            task.cancel()

    def clear_history(self) -> None:
        self.cancel()
        self.turns = []
        if self.storage is not None:
            self.storage.remove(HISTORY_KEY)

    async def analyze_session(self) -> str:
        """Markdown coaching report for the conversation so far."""
        return await self.api.analyze_session([t.to_history() for t in self.turns])

    def _refresh_credits(self) -> None:
        if self.credits is None:
            return
        task = asyncio.get_running_loop().create_task(self.credits.refresh())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_idle(self) -> None:
        """Wait for the in-flight request and background credit refreshes."""
        if self._current is not None:
            await asyncio.wait([self._current])
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _call(self, callback: Optional[Callable[..., Any]], *args) -> None:
        if callback is None:
            return
        result = callback(*args)
        if asyncio.iscoroutine(result):
            task = asyncio.get_running_loop().create_task(result)
            self._background.add(task)
            task.add_done_callback(self._background.discard)


def _cancelling() -> bool:
    """True when the calling task itself has been asked to cancel."""
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0
