"""Command-line interface for mailbrief.

Provides commands for configuration validation, label setup, one-shot
cycles, and the scheduled service.

Usage:
    python -m mailbrief validate-config
    python -m mailbrief ensure-labels
    python -m mailbrief classify --once
    python -m mailbrief brief --once --dry-run
    python -m mailbrief run
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import click
from dotenv import find_dotenv, load_dotenv
from rich.console import Console

from mailbrief.config import validate_config_file
from mailbrief.core.logging import configure_logging

if TYPE_CHECKING:
    import anthropic

    from mailbrief.config_schema import AppConfig
    from mailbrief.engine.cycles import BriefingCycleResult, ClassificationCycleResult
    from mailbrief.mail.himalaya import HimalayaMailStore

console = Console()


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: HimalayaMailStore
    anthropic_client: anthropic.AsyncAnthropic


def _init_cli_deps() -> CLIDeps:
    """Load config and build the mail store and Anthropic client.

    Prints actionable error messages and calls sys.exit(1) on failure.
    """
    import anthropic as anthropic_mod

    from mailbrief.config import get_config
    from mailbrief.core.errors import ConfigurationError
    from mailbrief.core.retry import inner_timeout
    from mailbrief.mail.himalaya import HimalayaMailStore

    try:
        config = get_config()
    except ConfigurationError as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and adjust it."
        )
        sys.exit(1)

    store = HimalayaMailStore(
        config.mailstore,
        timeout=inner_timeout(config.limits.request_timeout_seconds),
        state_labels=(config.labels.ready_label, config.labels.done_label),
    )
    # Transient retries are handled by core.retry
    anthropic_client = anthropic_mod.AsyncAnthropic(
        max_retries=0,
        timeout=inner_timeout(config.limits.request_timeout_seconds),
    )
    return CLIDeps(config=config, store=store, anthropic_client=anthropic_client)


def _run_async(coro, stopped_message: str = "Cancelled.", interrupt_code: int = 130) -> None:
    """Run a coroutine with the CLI's standard error handling."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print(f"\n[yellow]{stopped_message}[/yellow]")
        sys.exit(interrupt_code)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines (for log collectors)")
def cli(debug: bool, json_logs: bool) -> None:
    """mailbrief - sorts unread mail and publishes a daily briefing."""
    log_level = "DEBUG" if debug else "INFO"
    configure_logging(log_level=log_level, json_output=json_logs)


@cli.command("validate-config")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file."""
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)
    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    console.print(f"\n[red]✗[/red] {message}")
    sys.exit(1)


@cli.command("ensure-labels")
def ensure_labels() -> None:
    """Create the state labels on the mailbox if they are missing."""
    _run_async(_run_ensure_labels())


async def _run_ensure_labels() -> None:
    from mailbrief.engine.cycles import retry_policy_from
    from mailbrief.engine.labels import LabelStateMachine

    deps = _init_cli_deps()
    machine = LabelStateMachine(deps.store, deps.config.labels, retry_policy_from(deps.config))
    await machine.ensure_labels()
    console.print(
        f"[green]✓[/green] Labels ready: [cyan]{machine.ready_label}[/cyan], "
        f"[cyan]{machine.done_label}[/cyan]"
    )


@cli.command("classify")
@click.option("--once", is_flag=True, required=True, help="Run a single classification cycle")
def classify(once: bool) -> None:
    """Run one classification cycle over unread inbox mail."""
    _run_async(_run_classify_once())


async def _run_classify_once() -> None:
    deps = _init_cli_deps()
    result = await _classification_cycle(deps).run()
    _print_classification_summary(result)
    if result.fatal_error:
        sys.exit(1)


@cli.command("brief")
@click.option("--once", is_flag=True, required=True, help="Run a single briefing cycle")
@click.option(
    "--dry-run",
    "is_dry_run",
    is_flag=True,
    help="Print the briefing without publishing or marking anything done",
)
def brief(once: bool, is_dry_run: bool) -> None:
    """Run one briefing cycle: publish ready mail and mark it done."""
    _run_async(_run_brief_once(is_dry_run))


async def _run_brief_once(is_dry_run: bool) -> None:
    deps = _init_cli_deps()
    if is_dry_run:
        console.print("[cyan]Dry-run mode:[/cyan] nothing will be published or marked done\n")

    result = await _briefing_cycle(deps, dry_run=is_dry_run).run(dry_run=is_dry_run)

    if is_dry_run and result.body is not None:
        console.rule(result.title or "")
        console.print(result.body, markup=False)
        console.rule()

    _print_briefing_summary(result)
    if result.fatal_error or result.publish_error:
        sys.exit(1)


@cli.command("run")
def run() -> None:
    """Run both cycles on their configured schedules until stopped."""
    console.print("Starting mailbrief scheduler...")
    _run_async(_run_scheduler(), stopped_message="Stopped.", interrupt_code=0)


async def _run_scheduler() -> None:
    """Run both cycles with APScheduler, each on its own cron schedule."""
    import signal

    from apscheduler.schedulers.asyncio import AsyncIOScheduler
    from apscheduler.triggers.cron import CronTrigger

    from mailbrief.config import reload_config_if_changed
    from mailbrief.core.logging import get_logger

    logger = get_logger(__name__)
    deps = _init_cli_deps()
    current = {"deps": deps}

    def refresh_deps() -> CLIDeps:
        if reload_config_if_changed():
            current["deps"] = _init_cli_deps()
            logger.info("cycle_dependencies_rebuilt")
        return current["deps"]

    async def run_classification() -> None:
        result = await _classification_cycle(refresh_deps()).run()
        console.print(
            f"[dim]Classify {result.cycle_id[:8]}...[/dim] "
            f"fetched={result.envelopes_fetched} ready={result.moved_to_ready} "
            f"failed={result.classification_failed + result.label_failed} "
            f"({result.duration_ms}ms)"
        )

    async def run_briefing() -> None:
        try:
            cycle = _briefing_cycle(refresh_deps())
        except Exception as e:
            logger.error("briefing_cycle_setup_failed", error=str(e))
            return
        result = await cycle.run()
        console.print(
            f"[dim]Brief {result.cycle_id[:8]}...[/dim] "
            f"entries={result.entries} published={result.published} "
            f"done={result.marked_done} ({result.duration_ms}ms)"
        )

    schedule = deps.config.schedule
    scheduler = AsyncIOScheduler(timezone=schedule.timezone)
    scheduler.add_job(
        run_classification,
        CronTrigger.from_crontab(schedule.classification, timezone=schedule.timezone),
        id="classification_cycle",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_briefing,
        CronTrigger.from_crontab(schedule.briefing, timezone=schedule.timezone),
        id="briefing_cycle",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()

    console.print(
        f"Classification: [cyan]{schedule.classification}[/cyan]  "
        f"Briefing: [cyan]{schedule.briefing}[/cyan] ({schedule.timezone}). "
        "Press Ctrl+C to stop."
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await stop_event.wait()

    scheduler.shutdown(wait=False)


def _classification_cycle(deps: CLIDeps):
    from mailbrief.classifier.claude_classifier import ClaudeClassifier
    from mailbrief.engine.cycles import ClassificationCycle

    classifier = ClaudeClassifier(deps.anthropic_client, deps.store, deps.config.classifier)
    return ClassificationCycle(deps.store, classifier, deps.config)


def _briefing_cycle(deps: CLIDeps, dry_run: bool = False):
    """Build a BriefingCycle. The GitHub sink is only required when publishing."""
    from mailbrief.classifier.claude_classifier import ClaudeSummarizer
    from mailbrief.engine.cycles import BriefingCycle
    from mailbrief.core.retry import inner_timeout
    from mailbrief.sink.github import GitHubIssueSink

    summarizer = ClaudeSummarizer(deps.anthropic_client, deps.config.classifier)
    sink = None
    if not dry_run:
        sink = GitHubIssueSink(
            deps.config.sink, timeout=inner_timeout(deps.config.limits.request_timeout_seconds)
        )
    return BriefingCycle(deps.store, summarizer, sink, deps.config)


def _print_classification_summary(result: ClassificationCycleResult) -> None:
    console.print(f"\n[bold]Classification Cycle Summary[/bold] (cycle {result.cycle_id[:8]}...)")
    console.print(f"  Duration:         {result.duration_ms}ms")
    console.print(f"  Fetched:          {result.envelopes_fetched}")
    console.print(f"  Conversations:    {result.clusters}")
    console.print(f"  Ready for brief:  {result.moved_to_ready}")
    console.print(f"  Needs response:   {result.left_in_inbox}")
    console.print(f"  Already labelled: {result.already_applied}")
    console.print(f"  Classify failed:  {result.classification_failed}")
    console.print(f"  Label failed:     {result.label_failed}")
    if result.abandoned:
        console.print(f"  [yellow]Deadline reached, left pending: {result.abandoned}[/yellow]")
    if result.fatal_error:
        console.print(f"  [red]Aborted:[/red] {result.fatal_error}")
    elif result.zero_progress and result.envelopes_fetched:
        console.print("  [yellow]No envelope changed state this cycle[/yellow]")


def _print_briefing_summary(result: BriefingCycleResult) -> None:
    console.print(f"\n[bold]Briefing Cycle Summary[/bold] (cycle {result.cycle_id[:8]}...)")
    console.print(f"  Duration:     {result.duration_ms}ms")
    console.print(f"  Ready:        {result.envelopes_fetched}")
    console.print(f"  Entries:      {result.entries}")
    if result.skipped_empty:
        console.print("  Nothing ready; no briefing published")
    elif result.dry_run:
        console.print("  Dry run; nothing published")
    elif result.published:
        console.print(f"  Published:    [green]{result.reference}[/green]")
        console.print(f"  Marked done:  {result.marked_done}")
        if result.mark_done_failed:
            console.print(
                f"  [yellow]Mark done failed: {result.mark_done_failed} "
                "(they will be briefed again)[/yellow]"
            )
    if result.abandoned:
        console.print("  [yellow]Deadline reached before publishing[/yellow]")
    if result.publish_error:
        console.print(f"  [red]Not published:[/red] {result.publish_error}")
    if result.fatal_error:
        console.print(f"  [red]Aborted:[/red] {result.fatal_error}")


def main() -> None:
    """Entry point for the CLI.

    Loads .env from the working directory (or a parent) first, so the
    installed `mailbrief` script sees the same secrets as `python -m`.
    """
    load_dotenv(find_dotenv(usecwd=True))
    cli()


if __name__ == "__main__":
    main()
