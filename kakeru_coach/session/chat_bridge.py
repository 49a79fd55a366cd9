"""
Contextual chat about a graded writing.

A ChatSession holds one conversation anchored to a Writing. The bridge
turns "ask about this improvement" and "ask about this selection" into
questions on that session, opening the chat surface first and holding the
question until the surface has mounted.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Callable, List, Optional

from kakeru_coach.storage.models import ChatMessage, Improvement, Writing

if TYPE_CHECKING:
    from .context import SessionContext


logger = logging.getLogger(__name__)

CHAT_FAILED = "Could not get an answer. Please try again."

QUESTION_TEMPLATES = {
    "ja": {
        "improvement": "「{original}」を「{suggestion}」に直すのはなぜですか？詳しく教えてください。",
        "selection": "「{text}」について詳しく教えてください。",
    },
    "en": {
        "improvement": 'Why should "{original}" be changed to "{suggestion}"? Please explain in more detail.',
        "selection": 'Can you explain "{text}" in more detail?',
    },
}


def _templates(language: str):
    return QUESTION_TEMPLATES.get(language, QUESTION_TEMPLATES["ja"])


def compose_improvement_question(improvement: Improvement, language: str) -> str:
    return _templates(language)["improvement"].format(
        original=improvement.original, suggestion=improvement.suggestion
    )


def compose_selection_question(text: str, language: str) -> str:
    return _templates(language)["selection"].format(text=text.strip())


class ChatSession:
    """One conversation tied to one writing; the writing is loaded once."""

    def __init__(self, context: "SessionContext", writing: Writing):
        self.context = context
        self.writing = writing
        self.messages: List[ChatMessage] = []

    @property
    def language(self) -> str:
        return self.context.profile.explanation_lang

    async def ask(self, question: str) -> Optional[str]:
        """Send a question and append the reply.

        Returns:
            The reply, or None if the remote call failed (the question is
            then dropped from the transcript so it can be asked again)
        """
        self.messages.append(ChatMessage("user", question))
        try:
            reply = await self.context.client.reply_to_chat(
                self.context.profile, self.writing, list(self.messages), self.language
            )
        except Exception as e:
            self.messages.pop()
            await self.context.report_remote_failure(e, CHAT_FAILED)
            return None
        self.messages.append(ChatMessage("assistant", reply))
        return reply


class ChatSurface:
    """Open/mounted state of whatever displays the chat.

    Opening is immediate; mounting happens when the surface is actually
    ready to receive questions.
    """

    def __init__(self):
        self.is_open = False
        self._mounted = asyncio.Event()
        self._mount_listeners: List[Callable[[], None]] = []

    @property
    def is_mounted(self) -> bool:
        return self._mounted.is_set()

    def on_mount(self, listener: Callable[[], None]) -> None:
        self._mount_listeners.append(listener)

    def open(self) -> None:
        self.is_open = True

    def mount(self) -> None:
        """Mark the surface ready and run the mount listeners.

        Must be called on the session's event loop; a parked question is
        scheduled on it.
        """
        if not self.is_open:
            self.is_open = True
        if self._mounted.is_set():
            return
        self._mounted.set()
        for listener in list(self._mount_listeners):
            listener()

    def close(self) -> None:
        self.is_open = False
        self._mounted.clear()

    async def wait_mounted(self) -> None:
        await self._mounted.wait()


class ContextualChatBridge:
    """Routes anchored questions into an existing chat session.

    A question sent before the surface mounts is parked in a single pending
    slot (a newer question replaces it). Delivery is retried once after
    `retry_delay`; if the surface still isn't mounted, mounting it later
    delivers the parked question.
    """

    def __init__(self, session: ChatSession, surface: ChatSurface, retry_delay: float = 0.1):
        self.session = session
        self.surface = surface
        self.retry_delay = retry_delay
        self.pending: Optional[str] = None
        self._waiting = False
        self._flush_task: Optional[asyncio.Task] = None
        surface.on_mount(self._on_mount)

    async def ask_about_improvement(self, index: int, improvement: Improvement) -> Optional[str]:
        logger.debug("Asking about improvement %d of writing %s", index, self.session.writing.id)
        question = compose_improvement_question(improvement, self.session.language)
        return await self._deliver(question)

    async def ask_about_selection(self, selected_text: str) -> Optional[str]:
        if not selected_text.strip():
            return None
        question = compose_selection_question(selected_text, self.session.language)
        return await self._deliver(question)

    async def _deliver(self, question: str) -> Optional[str]:
        if not self.surface.is_open:
            self.surface.open()
        self.pending = question

        if not self.surface.is_mounted:
            self._waiting = True
            try:
                await asyncio.wait_for(self.surface.wait_mounted(), timeout=self.retry_delay)
            except asyncio.TimeoutError:
                logger.info("Chat surface not mounted yet, question parked until mount")
                return None
            finally:
                self._waiting = False

        if self.pending != question:
            return None
        self.pending = None
        return await self.session.ask(question)

    def _on_mount(self) -> None:
        if self.pending is None or self._waiting:
            return
        # raises before the question leaves the pending slot
        loop = asyncio.get_running_loop()
        question, self.pending = self.pending, None
        self._flush_task = loop.create_task(self.session.ask(question))

    async def drain(self) -> None:
        """Wait for a question flushed by a late mount to be answered."""
        if self._flush_task is not None:
            await self._flush_task
            self._flush_task = None
