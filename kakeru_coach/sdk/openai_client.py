"""
Metered OpenAI client for the writing coach.

Generates prompts, grades writings and answers follow-up questions. Every
call is gated by the token accountant and records exactly one usage event
on success.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from kakeru_coach.core.token_budget import OperationKind
from kakeru_coach.storage.models import (
    MODE_INFO,
    ChatMessage,
    Feedback,
    LearnerProfile,
    Prompt,
    UsageEvent,
    Writing,
    WritingMode,
    messages_to_dicts,
)
from .accounting import TokenAccountant


logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {"ja": "Japanese", "en": "English"}


class RemoteResponseError(Exception):
    """Raised when the model's output cannot be used."""


def _build_prompt_request(
    profile: LearnerProfile,
    mode: WritingMode,
    override: Optional[str]
) -> str:
    info = MODE_INFO[mode]
    if info.word_range:
        length = f"{info.word_range[0]}-{info.word_range[1]} words"
    else:
        length = "a length that suits the topic"
    lines = [
        "You are an English writing tutor. Create ONE writing prompt for the learner.",
        f"Learner level (CEFR): {profile.level}",
        f"Exercise type: {info.label}. Target length: {length}.",
    ]
    if mode == WritingMode.GOAL and profile.goal:
        lines.append(f"The learner's goal: {profile.goal}")
    if mode == WritingMode.HOBBY and profile.hobbies:
        lines.append(f"The learner's hobbies: {', '.join(profile.hobbies)}")
    if override:
        if mode == WritingMode.EXPRESSION:
            lines.append(f"The prompt must make the learner practise the expression: {override}")
        else:
            lines.append(f"Base the prompt on this topic or keywords: {override}")
    lines.append(
        "Return ONLY a JSON object with keys: prompt (string), hint (string), "
        f"recommended_words (integer), example_translation (a short example answer in "
        f"{LANGUAGE_NAMES.get(profile.explanation_lang, 'Japanese')})."
    )
    return "\n".join(lines)


def _build_grading_request(
    profile: LearnerProfile,
    prompt_text: str,
    answer: str,
    explanation_lang: str
) -> str:
    language = LANGUAGE_NAMES.get(explanation_lang, "Japanese")
    return (
        "You are an English writing examiner. Grade the learner's answer to the prompt.\n"
        f"Learner level (CEFR): {profile.level}. Write all explanations in {language}.\n"
        "Ranks are one of S, A, B, C, D.\n"
        "Return ONLY a JSON object with keys: overall_rank, grammar_rank, vocabulary_rank, "
        "structure_rank, content_rank, summary (string), improvements (array of objects "
        "with original, suggestion, explanation, category), structure_analysis (string), "
        "vocabulary_items (array of objects with term, meaning, example, type of "
        "'word' or 'expression'), model_answer (string).\n\n"
        f"Prompt:\n{prompt_text}\n\nAnswer:\n{answer}"
    )


def _build_chat_context(writing: Writing, explanation_lang: str) -> str:
    language = LANGUAGE_NAMES.get(explanation_lang, "Japanese")
    return (
        "You are a friendly English writing tutor answering follow-up questions about "
        f"a graded writing. Answer in {language}, briefly and concretely.\n\n"
        f"Prompt:\n{writing.prompt}\n\n"
        f"Learner's answer:\n{writing.user_answer}\n\n"
        f"Feedback:\n{json.dumps(writing.feedback.to_dict(), ensure_ascii=False)}"
    )


class CoachClient:
    """OpenAI client wrapper that meters every call against the token budget.

    Failures are loud: API errors, quota rejections and unusable output all
    propagate to the calling flow, which classifies them.
    """

    def __init__(
        self,
        accountant: TokenAccountant,
        model: str,
        client: Optional[AsyncOpenAI] = None
    ):
        """Initialize the metered client.

        Args:
            accountant: Token accountant gating and recording each call
            model: OpenAI model name (required)
            client: Pre-built AsyncOpenAI client, created from the
                environment on the first call when omitted

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        self.accountant = accountant
        self.model = model
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        """The AsyncOpenAI client, created on first use.

        Commands that never call the model work without credentials.
        """
        if self._client is None:
            self._client = AsyncOpenAI()
        return self._client

    async def _complete(
        self,
        profile: LearnerProfile,
        operation: OperationKind,
        messages: List[Dict[str, str]],
        json_output: bool
    ) -> str:
        await self.accountant.ensure_available(profile)

        kwargs: Dict[str, Any] = {}
        if json_output:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            **kwargs
        )

        usage = response.usage
        if not usage:
            raise RemoteResponseError("OpenAI response missing usage information")

        await self.accountant.record(UsageEvent(
            timestamp=datetime.now(timezone.utc),
            learner_id=profile.uid,
            operation=operation.value,
            model=self.model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            request_id=response.id
        ))

        content = response.choices[0].message.content
        if not content:
            raise RemoteResponseError("OpenAI response has no content")
        return content

    @staticmethod
    def _parse_json(content: str) -> Dict[str, Any]:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise RemoteResponseError(f"Model returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise RemoteResponseError("Model returned JSON that is not an object")
        return data

    async def generate_prompt(
        self,
        profile: LearnerProfile,
        mode: WritingMode,
        override: Optional[str] = None
    ) -> Prompt:
        """Generate a writing prompt for a mode, optionally on a given topic."""
        content = await self._complete(
            profile,
            OperationKind.GENERATE_PROMPT,
            [{"role": "user", "content": _build_prompt_request(profile, mode, override)}],
            json_output=True,
        )
        data = self._parse_json(content)
        data.setdefault("recommended_words", MODE_INFO[mode].default_word_count)
        try:
            prompt = Prompt.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteResponseError(f"Unusable prompt payload: {e}") from e
        if not prompt.text:
            raise RemoteResponseError("Model returned an empty prompt")
        return prompt

    async def grade_writing(
        self,
        profile: LearnerProfile,
        prompt_text: str,
        answer: str,
        explanation_lang: str
    ) -> Feedback:
        """Grade an answer. Returns a complete Feedback or raises."""
        content = await self._complete(
            profile,
            OperationKind.GRADE_WRITING,
            [{"role": "user", "content": _build_grading_request(
                profile, prompt_text, answer, explanation_lang)}],
            json_output=True,
        )
        try:
            return Feedback.from_dict(self._parse_json(content))
        except ValueError as e:
            raise RemoteResponseError(str(e)) from e

    async def reply_to_chat(
        self,
        profile: LearnerProfile,
        writing: Writing,
        messages: List[ChatMessage],
        explanation_lang: str
    ) -> str:
        """Answer the latest question in a chat about a writing."""
        payload = [{"role": "system", "content": _build_chat_context(writing, explanation_lang)}]
        payload.extend(messages_to_dicts(messages))
        return await self._complete(
            profile, OperationKind.CHAT, payload, json_output=False
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
