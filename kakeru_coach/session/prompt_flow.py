"""
Prompt generation flow.

States: IDLE -> GENERATING -> READY on success, back to IDLE on failure.
The two manual-entry modes never stay blocked on an AI failure: the
learner's own input becomes the prompt.
"""

import logging
from enum import Enum, auto
from typing import Optional

from kakeru_coach.core.rate_limit import classify
from kakeru_coach.storage.models import MODE_INFO, Prompt, WritingMode
from .context import SessionContext
from .events import NoticeLevel, PromptReady


logger = logging.getLogger(__name__)

MAX_MANUAL_INPUT_CHARS = 500
EXPRESSION_FALLBACK_WORDS = 60

GENERATION_FAILED = "Could not generate a prompt. Please try again."
MANUAL_FALLBACK_USED = "AI generation failed. Your input is used as the prompt as-is."


class PromptState(Enum):
    IDLE = auto()
    GENERATING = auto()
    READY = auto()


class RegenerationNotAllowed(Exception):
    """Raised when a mode that cannot regenerate already has a prompt."""


class ManualEntryError(Exception):
    """Raised for manual input the flow cannot use."""


def synthesize_prompt(mode: WritingMode, raw_input: str) -> Prompt:
    """Build a placeholder prompt from the learner's input, no remote call."""
    if mode == WritingMode.EXPRESSION:
        return Prompt(
            text=f"Use “{raw_input}” to write about your own experience or opinion in English.",
            hint=raw_input,
            recommended_word_count=EXPRESSION_FALLBACK_WORDS,
        )
    return Prompt(
        text=raw_input,
        hint="",
        recommended_word_count=MODE_INFO[WritingMode.CUSTOM].default_word_count,
    )


class PromptGenerationFlow:
    """Creates and regenerates the prompt of one writing session.

    Each request takes a generation number. When stale-response discarding
    is on, a response from a superseded request is dropped instead of
    overwriting the newer one.
    """

    def __init__(self, context: SessionContext, mode: WritingMode):
        self.context = context
        self.mode = mode
        self.info = MODE_INFO[mode]
        self.state = PromptState.IDLE
        self.prompt: Optional[Prompt] = None
        self._entered = False
        self._generation = 0

    @property
    def generating(self) -> bool:
        return self.state == PromptState.GENERATING

    @property
    def can_regenerate(self) -> bool:
        if self.generating:
            return False
        return self.info.regenerable or self.prompt is None

    async def enter(self, daily_prompt: Optional[Prompt] = None) -> Optional[Prompt]:
        """First entry to the session; auto-generates at most once."""
        if self._entered:
            return self.prompt
        self._entered = True

        if self.prompt is not None or self.generating:
            return self.prompt
        if daily_prompt is not None:
            self._attach(daily_prompt)
            return daily_prompt
        if self.info.manual_entry:
            return None
        return await self.generate()

    def _begin(self) -> int:
        self._generation += 1
        self.state = PromptState.GENERATING
        self.prompt = None
        return self._generation

    def _is_stale(self, generation: int) -> bool:
        if not self.context.config.session.discard_stale_responses:
            return False
        return generation != self._generation

    def _attach(self, prompt: Prompt, synthesized: bool = False) -> None:
        self.prompt = prompt
        self.state = PromptState.READY
        self.context.bus.publish(PromptReady(prompt, synthesized=synthesized))

    async def generate(self, topic_override: Optional[str] = None) -> Optional[Prompt]:
        """Request a new prompt, discarding the current one.

        Returns:
            The new prompt, or None on failure or when superseded

        Raises:
            RegenerationNotAllowed: For a non-regenerable mode that already
                has a prompt
        """
        if not self.info.regenerable and self.prompt is not None:
            raise RegenerationNotAllowed(
                f"{self.info.label} mode prompts cannot be regenerated"
            )

        override = topic_override.strip() if topic_override else None
        generation = self._begin()
        try:
            prompt = await self.context.client.generate_prompt(
                self.context.profile, self.mode, override or None
            )
        except Exception as e:
            if self._is_stale(generation):
                logger.info("Ignoring failure of superseded prompt request %d", generation)
                return None
            if generation == self._generation:
                self.state = PromptState.IDLE
            await self.context.report_remote_failure(e, GENERATION_FAILED)
            return None

        if self._is_stale(generation):
            logger.info("Discarding superseded prompt response %d", generation)
            return None
        self._attach(prompt)
        return prompt

    async def submit_manual(self, raw_input: str) -> Optional[Prompt]:
        """Use the learner's typed topic or expression to create the prompt.

        Falls back to a locally synthesized prompt if generation fails.

        Raises:
            ManualEntryError: If the mode has no manual entry or input is empty
            RegenerationNotAllowed: If a custom prompt is already set
        """
        if not self.info.manual_entry:
            raise ManualEntryError(f"{self.info.label} mode has no manual entry")
        text = raw_input[:MAX_MANUAL_INPUT_CHARS]
        if not text.strip():
            raise ManualEntryError("Input is empty")
        if not self.info.regenerable and self.prompt is not None:
            raise RegenerationNotAllowed(
                f"{self.info.label} mode prompts cannot be regenerated"
            )

        generation = self._begin()
        try:
            prompt = await self.context.client.generate_prompt(
                self.context.profile, self.mode, text.strip()
            )
        except Exception as e:
            if self._is_stale(generation):
                return None
            logger.warning("Prompt generation failed, synthesizing from input: %s", e)
            prompt = synthesize_prompt(self.mode, text)
            self._attach(prompt, synthesized=True)
            self.context.bus.notify(NoticeLevel.WARNING, MANUAL_FALLBACK_USED)
            if classify(e) is not None:
                await self.context.refresh_token_usage()
            return prompt

        if self._is_stale(generation):
            return None
        self._attach(prompt)
        return prompt
