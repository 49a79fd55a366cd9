"""
Session context.

Everything shared by the flows of one logged-in learner: the cached token
usage, the event bus, the persistence layer and the open chat sessions.
Created at login and torn down at logout.
"""

import logging
from typing import Dict, Optional

from kakeru_coach.config.loader import CoachConfig, default_config
from kakeru_coach.core.rate_limit import classify
from kakeru_coach.core.token_budget import BudgetView
from kakeru_coach.sdk.accounting import TokenAccountant
from kakeru_coach.sdk.openai_client import CoachClient
from kakeru_coach.storage.fallback import PersistenceFallbackLayer
from kakeru_coach.storage.models import LearnerProfile, TokenUsage, Writing
from .chat_bridge import ChatSession, ChatSurface, ContextualChatBridge
from .events import BudgetRefreshed, Notice, NoticeLevel, SessionEventBus


logger = logging.getLogger(__name__)


class SessionClosedError(Exception):
    """Raised when a closed session is used."""


class SessionContext:
    """Explicitly passed session state for one learner."""

    def __init__(
        self,
        profile: LearnerProfile,
        client: CoachClient,
        store: PersistenceFallbackLayer,
        accountant: TokenAccountant,
        config: Optional[CoachConfig] = None,
        bus: Optional[SessionEventBus] = None
    ):
        self.profile = profile
        self.client = client
        self.store = store
        self.accountant = accountant
        self.config = config or default_config()
        self.bus = bus or SessionEventBus()
        self.token_usage: Optional[TokenUsage] = None
        self._chats: Dict[str, ContextualChatBridge] = {}
        self._closed = False

    async def __aenter__(self) -> "SessionContext":
        await self.refresh_token_usage()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosedError("Session has been closed")

    @property
    def budget(self) -> BudgetView:
        """Budget view over the cached usage; unloaded means unconstrained."""
        return BudgetView(self.token_usage, self.config.costs)

    async def refresh_token_usage(self) -> Optional[TokenUsage]:
        """Replace the cached usage with a fresh read.

        A failed read keeps the previous value; readers tolerate staleness.
        """
        self._check_open()
        try:
            usage = await self.accountant.get_token_usage(self.profile)
        except Exception as e:
            logger.warning("Token usage refresh failed for %s: %s", self.profile.uid, e)
            return self.token_usage
        self.token_usage = usage
        self.bus.publish(BudgetRefreshed(usage))
        return usage

    async def report_remote_failure(self, error: BaseException, generic_message: str) -> Notice:
        """Publish the right notice for a failed remote call.

        Rate-limit rejections get their wait message and refresh the cached
        budget; everything else gets the generic retry message.
        """
        info = classify(error)
        if info is None:
            logger.error("%s (%s)", generic_message, error)
            return self.bus.notify(NoticeLevel.ERROR, generic_message)

        logger.warning("Rate limited for %s: %s", self.profile.uid, error)
        notice = self.bus.notify(NoticeLevel.WARNING, info.message, rate_limited=True)
        await self.refresh_token_usage()
        return notice

    def chat_for(self, writing: Writing) -> ContextualChatBridge:
        """Chat bridge for a writing; one per writing for the session's life."""
        self._check_open()
        bridge = self._chats.get(writing.id)
        if bridge is None:
            session = ChatSession(self, writing)
            bridge = ContextualChatBridge(
                session,
                ChatSurface(),
                retry_delay=self.config.session.chat_retry_delay,
            )
            self._chats[writing.id] = bridge
        return bridge

    async def open_chat(self, writing_id: str) -> Optional[ContextualChatBridge]:
        """Load a writing once and return its chat bridge, None if unknown."""
        self._check_open()
        bridge = self._chats.get(writing_id)
        if bridge is not None:
            return bridge
        writing = await self.store.get_writing(self.profile.uid, writing_id)
        if writing is None:
            return None
        return self.chat_for(writing)

    async def close(self) -> None:
        """Tear down at logout: drop cached state and release the client."""
        if self._closed:
            return
        self._closed = True
        for bridge in self._chats.values():
            bridge.surface.close()
        self._chats.clear()
        self.token_usage = None
        self.bus.clear()
        await self.client.aclose()
