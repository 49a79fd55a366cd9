"""
Grading submission flow.

Validates an answer against the guardrails, grades it with exactly one
remote call and persists exactly one Writing on success. Nothing is
persisted unless a complete Feedback came back, and nothing is retried
automatically.
"""

import logging
from typing import Optional

from kakeru_coach.core.guardrails import BlockReason, SubmissionBlocked, check_submission
from kakeru_coach.storage.fallback import PersistenceError
from kakeru_coach.storage.models import WritingDraft
from .context import SessionContext
from .events import NoticeLevel, WritingSaved
from .prompt_flow import PromptGenerationFlow


logger = logging.getLogger(__name__)

GRADING_FAILED = "Grading failed. Please try again."
SAVE_FAILED = "Your feedback could not be saved. Please try again."


class GradingSubmissionFlow:
    """Submits answers written against a prompt flow's current prompt."""

    def __init__(self, context: SessionContext, prompts: PromptGenerationFlow):
        self.context = context
        self.prompts = prompts
        self.submitting = False

    def check(self, answer: str) -> int:
        """Run the guardrails without submitting.

        Returns:
            The answer's word count

        Raises:
            SubmissionBlocked: If any guardrail refuses the answer
        """
        return check_submission(
            prompt=self.prompts.prompt,
            answer=answer,
            budget=self.context.budget,
            generating=self.prompts.generating,
            limits=self.context.config.submission,
        )

    def can_submit(self, answer: str) -> bool:
        if self.submitting:
            return False
        try:
            self.check(answer)
        except SubmissionBlocked:
            return False
        return True

    async def submit(self, answer: str) -> Optional[str]:
        """Grade an answer and store the result.

        The prompt is captured when the call starts; regenerating it later
        does not affect this submission.

        Returns:
            The new writing's id, or None if grading or saving failed

        Raises:
            SubmissionBlocked: If a guardrail refuses the answer or another
                submission is in flight; no remote call is made
        """
        if self.submitting:
            raise SubmissionBlocked(
                "A submission is already in progress", BlockReason.IN_PROGRESS
            )
        word_count = self.check(answer)
        prompt = self.prompts.prompt
        profile = self.context.profile

        self.submitting = True
        try:
            try:
                feedback = await self.context.client.grade_writing(
                    profile, prompt.text, answer, profile.explanation_lang
                )
            except Exception as e:
                await self.context.report_remote_failure(e, GRADING_FAILED)
                return None

            draft = WritingDraft(
                owner_id=profile.uid,
                mode=self.prompts.mode,
                prompt=prompt.text,
                prompt_hint=prompt.hint,
                recommended_word_count=prompt.recommended_word_count,
                user_answer=answer,
                feedback=feedback,
                word_count=word_count,
            )
            try:
                writing = await self.context.store.save_writing(draft)
            except PersistenceError as e:
                logger.error("Could not persist graded writing: %s", e)
                self.context.bus.notify(NoticeLevel.ERROR, SAVE_FAILED)
                return None

            local = self.context.store.is_local_id(writing.id)
            self.context.bus.publish(WritingSaved(writing.id, local=local))
            logger.info("Saved writing %s (local=%s)", writing.id, local)
            return writing.id
        finally:
            self.submitting = False
