"""
Tests for prompt generation, regeneration and manual-entry fallback.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from kakeru_coach.config.loader import CoachConfig, SessionConfig
from kakeru_coach.core.rate_limit import QuotaExceededError
from kakeru_coach.session.events import BudgetRefreshed, Notice, NoticeLevel, PromptReady
from kakeru_coach.session.grading_flow import GradingSubmissionFlow
from kakeru_coach.session.prompt_flow import (
    GENERATION_FAILED,
    MANUAL_FALLBACK_USED,
    MAX_MANUAL_INPUT_CHARS,
    ManualEntryError,
    PromptGenerationFlow,
    PromptState,
    RegenerationNotAllowed,
    synthesize_prompt,
)
from kakeru_coach.storage.models import WritingMode

from conftest import make_prompt, make_usage


def _collect(context, event_type):
    events = []
    context.bus.subscribe(event_type, events.append)
    return events


class TestSynthesizePrompt:
    """Test the locally built fallback prompts."""

    def test_expression_wraps_input(self):
        prompt = synthesize_prompt(WritingMode.EXPRESSION, "look forward to")
        assert prompt.text == (
            "Use “look forward to” to write about your own experience or opinion in English."
        )
        assert prompt.hint == "look forward to"
        assert prompt.recommended_word_count == 60

    def test_custom_uses_input_verbatim(self):
        prompt = synthesize_prompt(WritingMode.CUSTOM, "My first trip abroad")
        assert prompt.text == "My first trip abroad"
        assert prompt.hint == ""
        assert prompt.recommended_word_count == 80


class TestEnter:
    """Test first entry into a writing session."""

    def test_auto_generates_once(self, context, client):
        flow = PromptGenerationFlow(context, WritingMode.HOBBY)

        first = asyncio.run(flow.enter())
        second = asyncio.run(flow.enter())

        assert first == make_prompt()
        assert second is first
        assert client.generate_prompt.await_count == 1
        assert flow.state == PromptState.READY

    def test_daily_prompt_skips_generation(self, context, client):
        flow = PromptGenerationFlow(context, WritingMode.DAILY)
        daily = make_prompt(text="What did you eat for breakfast?")

        result = asyncio.run(flow.enter(daily_prompt=daily))

        assert result == daily
        assert flow.prompt == daily
        client.generate_prompt.assert_not_awaited()

    @pytest.mark.parametrize("mode", [WritingMode.CUSTOM, WritingMode.EXPRESSION])
    def test_manual_modes_wait_for_input(self, context, client, mode):
        flow = PromptGenerationFlow(context, mode)

        assert asyncio.run(flow.enter()) is None
        assert flow.state == PromptState.IDLE
        client.generate_prompt.assert_not_awaited()

    def test_enter_after_generate_does_not_regenerate(self, context, client):
        flow = PromptGenerationFlow(context, WritingMode.GOAL)

        async def scenario():
            await flow.generate()
            return await flow.enter()

        assert asyncio.run(scenario()) == make_prompt()
        assert client.generate_prompt.await_count == 1


class TestGenerate:
    """Test regeneration and failure handling."""

    def test_publishes_prompt_ready(self, context):
        ready = _collect(context, PromptReady)
        flow = PromptGenerationFlow(context, WritingMode.BUSINESS)

        asyncio.run(flow.generate())

        assert ready == [PromptReady(make_prompt(), synthesized=False)]

    def test_topic_override_is_trimmed(self, context, client, profile):
        flow = PromptGenerationFlow(context, WritingMode.SOCIAL)

        asyncio.run(flow.generate("  climate change  "))

        client.generate_prompt.assert_awaited_once_with(
            profile, WritingMode.SOCIAL, "climate change"
        )

    def test_blank_override_is_ignored(self, context, client, profile):
        flow = PromptGenerationFlow(context, WritingMode.SOCIAL)

        asyncio.run(flow.generate("   "))

        client.generate_prompt.assert_awaited_once_with(profile, WritingMode.SOCIAL, None)

    def test_failure_returns_to_idle_with_error_notice(self, context, client):
        client.generate_prompt.side_effect = RuntimeError("connection reset")
        notices = _collect(context, Notice)
        flow = PromptGenerationFlow(context, WritingMode.HOBBY)

        assert asyncio.run(flow.generate()) is None

        assert flow.state == PromptState.IDLE
        assert flow.prompt is None
        assert notices == [Notice(NoticeLevel.ERROR, GENERATION_FAILED)]

    def test_rate_limit_refreshes_budget(self, context, client, accountant):
        client.generate_prompt.side_effect = QuotaExceededError("spent")
        accountant.get_token_usage.return_value = make_usage(tokens_used=10_000)
        notices = _collect(context, Notice)
        refreshed = _collect(context, BudgetRefreshed)
        flow = PromptGenerationFlow(context, WritingMode.HOBBY)

        asyncio.run(flow.generate())

        assert len(notices) == 1
        assert notices[0].level == NoticeLevel.WARNING
        assert notices[0].rate_limited is True
        assert refreshed == [BudgetRefreshed(make_usage(tokens_used=10_000))]
        assert context.token_usage.tokens_remaining == 0

    def test_stale_response_is_discarded(self, context, client):
        first_release = asyncio.Event()
        first = make_prompt(text="Old topic")
        second = make_prompt(text="New topic")

        async def respond(profile, mode, override):
            if override == "old":
                await first_release.wait()
                return first
            return second

        client.generate_prompt = AsyncMock(side_effect=respond)
        flow = PromptGenerationFlow(context, WritingMode.HOBBY)

        async def scenario():
            slow = asyncio.ensure_future(flow.generate("old"))
            await asyncio.sleep(0)
            newer = await flow.generate("new")
            first_release.set()
            return await slow, newer

        slow_result, newer_result = asyncio.run(scenario())

        assert slow_result is None
        assert newer_result == second
        assert flow.prompt == second

    def test_stale_guard_can_be_disabled(self, context, client):
        context.config = CoachConfig(session=SessionConfig(discard_stale_responses=False))
        first_release = asyncio.Event()
        first = make_prompt(text="Old topic")

        async def respond(profile, mode, override):
            if override == "old":
                await first_release.wait()
                return first
            return make_prompt(text="New topic")

        client.generate_prompt = AsyncMock(side_effect=respond)
        flow = PromptGenerationFlow(context, WritingMode.HOBBY)

        async def scenario():
            slow = asyncio.ensure_future(flow.generate("old"))
            await asyncio.sleep(0)
            await flow.generate("new")
            first_release.set()
            await slow

        asyncio.run(scenario())

        assert flow.prompt == first

    def test_superseded_failure_keeps_newer_prompt(self, context, client):
        context.config = CoachConfig(session=SessionConfig(discard_stale_responses=False))
        first_release = asyncio.Event()
        newer = make_prompt(text="New topic")

        async def respond(profile, mode, override):
            if override == "old":
                await first_release.wait()
                raise RuntimeError("connection reset")
            return newer

        client.generate_prompt = AsyncMock(side_effect=respond)
        flow = PromptGenerationFlow(context, WritingMode.HOBBY)

        async def scenario():
            slow = asyncio.ensure_future(flow.generate("old"))
            await asyncio.sleep(0)
            await flow.generate("new")
            first_release.set()
            await slow

        asyncio.run(scenario())

        assert flow.prompt == newer
        assert flow.state == PromptState.READY

    def test_can_regenerate_regular_mode(self, context):
        flow = PromptGenerationFlow(context, WritingMode.GOAL)
        asyncio.run(flow.generate())
        assert flow.can_regenerate is True


class TestManualEntry:
    """Test custom and expression input."""

    def test_custom_fallback_uses_input_verbatim(self, context, client, profile):
        client.generate_prompt.side_effect = RuntimeError("model unavailable")
        notices = _collect(context, Notice)
        ready = _collect(context, PromptReady)
        flow = PromptGenerationFlow(context, WritingMode.CUSTOM)

        prompt = asyncio.run(flow.submit_manual("  Why I started running  "))

        assert prompt.text == "  Why I started running  "
        assert prompt.recommended_word_count == 80
        assert flow.state == PromptState.READY
        assert notices == [Notice(NoticeLevel.WARNING, MANUAL_FALLBACK_USED)]
        assert ready[0].synthesized is True
        client.generate_prompt.assert_awaited_once_with(
            profile, WritingMode.CUSTOM, "Why I started running"
        )

    def test_custom_fallback_keeps_submission_possible(self, context, client):
        client.generate_prompt.side_effect = RuntimeError("model unavailable")
        flow = PromptGenerationFlow(context, WritingMode.CUSTOM)

        asyncio.run(flow.submit_manual("My first trip abroad"))

        grading = GradingSubmissionFlow(context, flow)
        assert grading.can_submit("Last summer I flew to Seoul with my family.") is True

    def test_expression_fallback(self, context, client):
        client.generate_prompt.side_effect = RuntimeError("model unavailable")
        flow = PromptGenerationFlow(context, WritingMode.EXPRESSION)

        prompt = asyncio.run(flow.submit_manual("take for granted"))

        assert prompt.hint == "take for granted"
        assert prompt.recommended_word_count == 60
        assert "“take for granted”" in prompt.text

    def test_fallback_on_rate_limit_refreshes_budget(self, context, client, accountant):
        client.generate_prompt.side_effect = QuotaExceededError("spent")
        flow = PromptGenerationFlow(context, WritingMode.CUSTOM)

        prompt = asyncio.run(flow.submit_manual("My hometown"))

        assert prompt.text == "My hometown"
        accountant.get_token_usage.assert_awaited_once()

    def test_input_is_capped(self, context, client, profile):
        flow = PromptGenerationFlow(context, WritingMode.EXPRESSION)

        asyncio.run(flow.submit_manual("x" * (MAX_MANUAL_INPUT_CHARS + 50)))

        sent = client.generate_prompt.await_args.args[2]
        assert len(sent) == MAX_MANUAL_INPUT_CHARS

    def test_empty_input_rejected(self, context, client):
        flow = PromptGenerationFlow(context, WritingMode.CUSTOM)
        with pytest.raises(ManualEntryError, match="empty"):
            asyncio.run(flow.submit_manual("   "))
        client.generate_prompt.assert_not_awaited()

    def test_regular_mode_has_no_manual_entry(self, context):
        flow = PromptGenerationFlow(context, WritingMode.DAILY)
        with pytest.raises(ManualEntryError):
            asyncio.run(flow.submit_manual("anything"))

    def test_custom_prompt_cannot_be_regenerated(self, context, client):
        flow = PromptGenerationFlow(context, WritingMode.CUSTOM)
        asyncio.run(flow.submit_manual("My hometown"))

        assert flow.can_regenerate is False
        with pytest.raises(RegenerationNotAllowed):
            asyncio.run(flow.generate())
        with pytest.raises(RegenerationNotAllowed):
            asyncio.run(flow.submit_manual("Another topic"))
        assert client.generate_prompt.await_count == 1

    def test_expression_prompt_can_be_replaced(self, context, client):
        flow = PromptGenerationFlow(context, WritingMode.EXPRESSION)
        asyncio.run(flow.submit_manual("break the ice"))
        asyncio.run(flow.submit_manual("on the fence"))
        assert client.generate_prompt.await_count == 2
