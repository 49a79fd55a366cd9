"""
CLI interface for Kakeru Coach.

Provides command-line access to writing sessions, feedback, follow-up
questions and the vocabulary book.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from kakeru_coach.config.loader import CoachConfig, default_config, load_config
from kakeru_coach.core.guardrails import SubmissionBlocked
from kakeru_coach.core.token_budget import OperationKind, format_tokens
from kakeru_coach.sdk.accounting import TokenAccountant
from kakeru_coach.sdk.openai_client import CoachClient
from kakeru_coach.session.context import SessionContext
from kakeru_coach.session.events import Notice, NoticeLevel, SessionEventBus
from kakeru_coach.session.grading_flow import GradingSubmissionFlow
from kakeru_coach.session.prompt_flow import (
    ManualEntryError,
    PromptGenerationFlow,
)
from kakeru_coach.session.vocabulary import VocabularyBook, VocabularyLimitReached
from kakeru_coach.storage.fallback import PersistenceError, PersistenceFallbackLayer
from kakeru_coach.storage.local_cache import LocalCache
from kakeru_coach.storage.models import (
    MODE_INFO,
    LearnerProfile,
    VocabType,
    Writing,
    WritingMode,
)
from kakeru_coach.storage.repository import DurableStore, initialize_schema

app = typer.Typer()
vocab_app = typer.Typer(help="Manage the vocabulary book.")
app.add_typer(vocab_app, name="vocab")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_CONFIG_FILE = "kakeru.yaml"
DEFAULT_LEARNER = LearnerProfile(uid="learner")

_NOTICE_STYLES = {
    NoticeLevel.INFO: "cyan",
    NoticeLevel.WARNING: "yellow",
    NoticeLevel.ERROR: "red",
}


def _load_settings(config_path: Optional[str]) -> CoachConfig:
    if config_path:
        return load_config(config_path)
    if Path(DEFAULT_CONFIG_FILE).exists():
        return load_config(DEFAULT_CONFIG_FILE)
    return default_config()


def _build_context(config: CoachConfig) -> SessionContext:
    """Wire a session for the configured learner."""
    accountant = TokenAccountant(config)
    store = PersistenceFallbackLayer(
        DurableStore(config.storage.db_path),
        LocalCache(config.storage.cache_path),
        config.storage.local_id_prefix,
    )
    bus = SessionEventBus()
    bus.subscribe(Notice, _print_notice)
    return SessionContext(
        profile=config.profile or DEFAULT_LEARNER,
        client=CoachClient(accountant, config.model),
        store=store,
        accountant=accountant,
        config=config,
        bus=bus,
    )


def _print_notice(notice: Notice) -> None:
    style = _NOTICE_STYLES[notice.level]
    console.print(f"[{style}]{notice.message}[/]")


def _config(ctx: typer.Context) -> CoachConfig:
    return ctx.obj["config"]


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to a YAML configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Kakeru Coach CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = _load_settings(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    ctx.obj = {"config": settings}
    if ctx.invoked_subcommand is None:
        console.print("Kakeru Coach - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Kakeru Coach database."""
    try:
        initialize_schema(_config(ctx).storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def usage(ctx: typer.Context):
    """Show this month's token usage and the operations it still pays for."""
    async def run() -> int:
        async with _build_context(_config(ctx)) as context:
            budget = context.budget
            if not budget.loaded:
                console.print("[yellow]Token usage is not available right now[/]")
                return EXIT_CODE_FAIL
            _display_budget(context)
            return EXIT_CODE_PASS

    sys.exit(asyncio.run(run()))


def _display_budget(context: SessionContext) -> None:
    usage_ = context.token_usage
    console.print(f"\n[bold]Token usage since {usage_.period_start:%Y-%m-%d}[/bold]")
    console.print(
        f"Used {format_tokens(usage_.tokens_used)} of {format_tokens(usage_.token_limit)} "
        f"({format_tokens(max(usage_.tokens_remaining, 0))} remaining)"
    )
    table = Table("Operation", "Estimated remaining")
    for kind in OperationKind:
        table.add_row(kind.value, str(context.budget.estimate(kind)))
    console.print(table)


@app.command()
def write(
    ctx: typer.Context,
    mode: WritingMode = typer.Argument(..., help="Writing mode"),
    topic: Optional[str] = typer.Option(
        None, "--topic", "-t", help="Topic, keywords or expression for the prompt"
    ),
    answer: Optional[str] = typer.Option(
        None, "--answer", "-a", help="Answer text; prompted for when omitted"
    ),
):
    """Get a prompt, write an answer and have it graded."""
    sys.exit(asyncio.run(_write_session(_config(ctx), mode, topic, answer)))


async def _write_session(
    config: CoachConfig,
    mode: WritingMode,
    topic: Optional[str],
    answer: Optional[str]
) -> int:
    async with _build_context(config) as context:
        prompts = PromptGenerationFlow(context, mode)
        grading = GradingSubmissionFlow(context, prompts)

        if MODE_INFO[mode].manual_entry:
            raw_input = topic or typer.prompt(
                "Expression to practise" if mode == WritingMode.EXPRESSION else "Your topic"
            )
            try:
                await prompts.submit_manual(raw_input)
            except ManualEntryError as e:
                console.print(f"[red]Error:[/] {e}")
                return EXIT_CODE_FAIL
        elif topic:
            await prompts.generate(topic)
        else:
            await prompts.enter()

        prompt = prompts.prompt
        if prompt is None:
            return EXIT_CODE_FAIL

        console.print(f"\n[bold]Prompt[/bold] ({MODE_INFO[mode].label})")
        console.print(prompt.text)
        if prompt.hint:
            console.print(f"[dim]Hint: {prompt.hint}[/]")
        console.print(f"Recommended: {prompt.recommended_word_count} words")
        remaining = context.budget.estimate(OperationKind.GRADE_WRITING)
        if remaining is not None:
            console.print(f"[dim]About {remaining} gradings left this month[/]")

        text = answer if answer is not None else typer.prompt("\nYour answer")
        try:
            writing_id = await grading.submit(text)
        except SubmissionBlocked as e:
            console.print(f"[red]Cannot submit:[/] {e}")
            return EXIT_CODE_FAIL
        if writing_id is None:
            return EXIT_CODE_FAIL

        writing = await context.store.get_writing(context.profile.uid, writing_id)
        if writing is not None:
            _display_writing(writing)
        return EXIT_CODE_PASS


def _display_writing(writing: Writing) -> None:
    """Display a graded writing."""
    feedback = writing.feedback
    console.print(f"\n[bold]Writing {writing.id}[/bold]")
    console.print(
        f"{MODE_INFO[writing.mode].label} · {writing.word_count} words · "
        f"{writing.created_at:%Y-%m-%d %H:%M}"
    )

    ranks = Table("Overall", "Grammar", "Vocabulary", "Structure", "Content")
    ranks.add_row(
        feedback.overall_rank,
        feedback.grammar_rank,
        feedback.vocabulary_rank,
        feedback.structure_rank,
        feedback.content_rank,
    )
    console.print(ranks)
    console.print(feedback.summary)

    if feedback.improvements:
        table = Table("#", "Original", "Suggestion", "Why")
        for index, improvement in enumerate(feedback.improvements):
            table.add_row(
                str(index), improvement.original, improvement.suggestion, improvement.explanation
            )
        console.print(table)
    if feedback.structure_analysis:
        console.print(f"\n[bold]Structure[/bold]\n{feedback.structure_analysis}")
    if feedback.vocabulary_items:
        console.print("\n[bold]Vocabulary[/bold]")
        for index, item in enumerate(feedback.vocabulary_items):
            console.print(f"{index}. {item.term} - {item.meaning}")
    console.print(f"\n[bold]Model answer[/bold]\n{feedback.model_answer}")


@app.command()
def show(ctx: typer.Context, writing_id: str = typer.Argument(..., help="Writing id")):
    """Show a graded writing."""
    async def run() -> int:
        async with _build_context(_config(ctx)) as context:
            try:
                writing = await context.store.get_writing(context.profile.uid, writing_id)
            except PersistenceError as e:
                console.print(f"[red]Error:[/] {e}")
                return EXIT_CODE_FAIL
            if writing is None:
                console.print(f"[yellow]No writing found with id {writing_id}[/]")
                return EXIT_CODE_FAIL
            _display_writing(writing)
            return EXIT_CODE_PASS

    sys.exit(asyncio.run(run()))


@app.command()
def ask(
    ctx: typer.Context,
    writing_id: str = typer.Argument(..., help="Writing id"),
    improvement: Optional[int] = typer.Option(
        None, "--improvement", "-i", help="Index of the improvement to ask about"
    ),
    selection: Optional[str] = typer.Option(
        None, "--selection", "-s", help="Text from the writing to ask about"
    ),
):
    """Ask a follow-up question about a graded writing."""
    if (improvement is None) == (selection is None):
        console.print("[red]Error:[/] pass exactly one of --improvement or --selection")
        sys.exit(EXIT_CODE_FAIL)

    async def run() -> int:
        async with _build_context(_config(ctx)) as context:
            bridge = await context.open_chat(writing_id)
            if bridge is None:
                console.print(f"[yellow]No writing found with id {writing_id}[/]")
                return EXIT_CODE_FAIL
            bridge.surface.mount()
            if improvement is not None:
                improvements = bridge.session.writing.feedback.improvements
                if not 0 <= improvement < len(improvements):
                    console.print(f"[red]Error:[/] no improvement #{improvement}")
                    return EXIT_CODE_FAIL
                reply = await bridge.ask_about_improvement(improvement, improvements[improvement])
            else:
                reply = await bridge.ask_about_selection(selection)
            if reply is None:
                return EXIT_CODE_FAIL
            console.print(reply)
            return EXIT_CODE_PASS

    sys.exit(asyncio.run(run()))


@vocab_app.command("list")
def vocab_list(
    ctx: typer.Context,
    tab: str = typer.Option("all", "--tab", help="all, word or expression"),
    query: str = typer.Option("", "--query", "-q", help="Search term or meaning"),
):
    """List vocabulary entries."""
    async def run() -> int:
        async with _build_context(_config(ctx)) as context:
            book = VocabularyBook(context)
            await book.load()
            try:
                entries = book.filter(tab, query)
            except ValueError as e:
                console.print(f"[red]Error:[/] {e}")
                return EXIT_CODE_FAIL
            counts = book.counts()
            console.print(
                f"{counts['all']} entries ({counts['word']} words, "
                f"{counts['expression']} expressions)"
            )
            table = Table("ID", "Type", "Term", "Meaning", "Example")
            for entry in entries:
                table.add_row(entry.id, entry.type.value, entry.term, entry.meaning, entry.example or "")
            console.print(table)
            return EXIT_CODE_PASS

    sys.exit(asyncio.run(run()))


@vocab_app.command("add")
def vocab_add(
    ctx: typer.Context,
    term: str = typer.Argument(..., help="Word or expression"),
    meaning: str = typer.Option("", "--meaning", "-m"),
    example: Optional[str] = typer.Option(None, "--example", "-e"),
    vocab_type: VocabType = typer.Option(VocabType.WORD, "--type"),
):
    """Add a word or expression."""
    async def run() -> int:
        async with _build_context(_config(ctx)) as context:
            book = VocabularyBook(context)
            await book.load()
            try:
                entry = await book.add(vocab_type, term, meaning, example)
            except (ValueError, VocabularyLimitReached, PersistenceError) as e:
                console.print(f"[red]Error:[/] {e}")
                return EXIT_CODE_FAIL
            console.print(f"[green]✓[/] Saved {entry.term} ({entry.id})")
            return EXIT_CODE_PASS

    sys.exit(asyncio.run(run()))


@vocab_app.command("delete")
def vocab_delete(ctx: typer.Context, entry_id: str = typer.Argument(..., help="Entry id")):
    """Delete a vocabulary entry."""
    async def run() -> int:
        async with _build_context(_config(ctx)) as context:
            try:
                await VocabularyBook(context).delete(entry_id)
            except PersistenceError as e:
                console.print(f"[red]Error:[/] {e}")
                return EXIT_CODE_FAIL
            console.print(f"[green]✓[/] Deleted {entry_id}")
            return EXIT_CODE_PASS

    sys.exit(asyncio.run(run()))


@vocab_app.command("promote")
def vocab_promote(
    ctx: typer.Context,
    writing_id: str = typer.Argument(..., help="Writing id"),
    index: int = typer.Argument(..., help="Index of the suggested vocabulary item"),
):
    """Save a vocabulary item suggested in a writing's feedback."""
    async def run() -> int:
        async with _build_context(_config(ctx)) as context:
            writing = await context.store.get_writing(context.profile.uid, writing_id)
            if writing is None:
                console.print(f"[yellow]No writing found with id {writing_id}[/]")
                return EXIT_CODE_FAIL
            items = writing.feedback.vocabulary_items
            if not 0 <= index < len(items):
                console.print(f"[red]Error:[/] no vocabulary item #{index}")
                return EXIT_CODE_FAIL
            book = VocabularyBook(context)
            await book.load()
            try:
                entry = await book.promote(items[index], source=writing.id)
            except (VocabularyLimitReached, PersistenceError) as e:
                console.print(f"[red]Error:[/] {e}")
                return EXIT_CODE_FAIL
            console.print(f"[green]✓[/] Saved {entry.term} ({entry.id})")
            return EXIT_CODE_PASS

    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    app()
