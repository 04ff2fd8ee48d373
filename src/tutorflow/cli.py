"""Command-line interface for tutorflow."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, get_args

import click
import yaml
from rich.console import Console
from rich.table import Table

from .errors import FRIENDLY_MESSAGES, ErrorCode, is_recoverable, is_retryable
from .manager import TutorialManager
from .models import TutorialProgress, TutorialResult
from .session import create_session
from .settings import EngineSettings, load_settings
from .templates import Audience, TutorialConfigManager, UserTraits

console = Console()


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Engine settings YAML file",
)
@click.option(
    "--progress-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding progress files (overrides settings)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(
    ctx: click.Context, config_path: Path | None, progress_dir: Path | None, verbose: bool
) -> None:
    """tutorflow - adaptive onboarding tutorial engine.

    Inspect tutorial templates and variants, and manage the tutorial
    progress of individual users.

    \b
    Commands:
      templates  List tutorial templates
      variants   List tutorial variants
      generate   Show the tutorial a user would get
      start      Create or resume a user's tutorial
      progress   Show a user's progress
      next       Advance a user past their current step
      skip       Skip a user's current step or the whole tutorial
      restart    Restart a user's tutorial
      complete   Record a completed action for a user
      errors     Show the error taxonomy
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
        )

    overrides: dict[str, Any] = {}
    if progress_dir is not None:
        overrides["progress_dir"] = progress_dir
    try:
        settings = load_settings(config_path, overrides)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading settings: {e}[/red]")
        sys.exit(1)

    ctx.obj = {"settings": settings, "verbose": verbose}


def _settings(ctx: click.Context) -> EngineSettings:
    return ctx.obj["settings"]


def _parse_preferences(values: tuple[str, ...]) -> dict[str, Any]:
    preferences: dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got {item!r}", param_hint="--set")
        preferences[key.strip()] = yaml.safe_load(raw)
    return preferences


@main.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--audience",
    "-a",
    type=click.Choice(get_args(Audience)),
    default=None,
    help="Filter templates by target audience",
)
@click.pass_context
def templates(ctx: click.Context, audience: str | None) -> None:
    """List tutorial templates.

    \b
    Examples:
      tutorflow templates                 # List all templates
      tutorflow templates -a new_user     # Templates for new users
    """
    registry = TutorialConfigManager(_settings(ctx).templates_dir)
    if audience:
        found = registry.get_templates_for_audience(audience)
        title = f"Templates for audience '{audience}'"
    else:
        found = registry.get_all_templates()
        title = "Available Tutorial Templates"

    if not found:
        console.print("[yellow]No templates found matching criteria[/yellow]")
        return

    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Template ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="bold")
    table.add_column("Audience")
    table.add_column("Steps", justify="right")
    table.add_column("Minutes", justify="right")
    table.add_column("Description")

    for template in found:
        table.add_row(
            template.id,
            template.name,
            template.target_audience,
            str(len(template.steps)),
            str(template.estimated_duration),
            template.description,
        )

    console.print(table)
    console.print(f"\n[dim]Total: {len(found)} template(s)[/dim]")


@main.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--template", "-t", "template_id", default=None, help="Only variants of a template")
@click.pass_context
def variants(ctx: click.Context, template_id: str | None) -> None:
    """List tutorial variants."""
    registry = TutorialConfigManager(_settings(ctx).templates_dir)
    found = (
        registry.get_variants_for_template(template_id)
        if template_id
        else registry.get_all_variants()
    )
    if not found:
        console.print("[yellow]No variants found[/yellow]")
        return

    table = Table(title="Tutorial Variants", show_header=True, header_style="bold")
    table.add_column("Variant ID", style="cyan", no_wrap=True)
    table.add_column("Base Template")
    table.add_column("Test Group", style="dim")
    table.add_column("Overrides")
    table.add_column("Description")

    for variant in found:
        overrides = ", ".join(f"{k}={v}" for k, v in variant.config_overrides.items())
        table.add_row(
            variant.id,
            variant.base_template,
            variant.test_group or "-",
            overrides or "-",
            variant.description,
        )

    console.print(table)
    console.print(f"\n[dim]Total: {len(found)} variant(s)[/dim]")


@main.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("user_id")
@click.option("--template", "-t", "template_id", default=None, help="Template to use")
@click.option("--variant", default=None, help="Variant to assign before generating")
@click.option(
    "--set",
    "preferences",
    multiple=True,
    metavar="KEY=VALUE",
    help="Tutorial config preference, e.g. --set default_timeout=45000",
)
@click.pass_context
def generate(
    ctx: click.Context,
    user_id: str,
    template_id: str | None,
    variant: str | None,
    preferences: tuple[str, ...],
) -> None:
    """Show the tutorial USER_ID would get.

    \b
    Examples:
      tutorflow generate alice
      tutorflow generate alice --variant fast_paced --set default_timeout=45000
    """
    settings = _settings(ctx)
    registry = TutorialConfigManager(settings.templates_dir)
    if variant and not registry.assign_variant_to_user(user_id, variant):
        console.print(f"[red]Error: Variant '{variant}' not found[/red]")
        sys.exit(1)

    try:
        definition = registry.generate_tutorial_for_user(
            user_id,
            template_id,
            _parse_preferences(preferences),
            default_template=settings.default_template,
        )
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    if definition is None:
        console.print(f"[red]Error: Template '{template_id}' not found[/red]")
        sys.exit(1)

    console.print(f"[bold]Tutorial for {user_id}[/bold]")
    console.print(f"  Template: {definition.template_id}")
    console.print(f"  Variant: {definition.variant_id or '-'}")
    console.print(f"  Default timeout: {definition.config.default_timeout}ms")
    console.print(f"  Max retries: {definition.config.max_retries}")
    console.print()

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Step", style="cyan")
    table.add_column("Title", style="bold")
    table.add_column("Required Action")
    table.add_column("Timeout", justify="right")
    table.add_column("Retries", justify="right")

    for index, step in enumerate(definition.steps, start=1):
        detection = definition.detection_for(step.id)
        table.add_row(
            str(index),
            step.id.value,
            step.title,
            step.required_action.value if step.required_action else "-",
            f"{detection.timeout}ms" if detection else "-",
            str(detection.retries) if detection else "-",
        )
    console.print(table)


def _print_progress(progress: TutorialProgress | None, user_id: str) -> None:
    if progress is None:
        console.print(f"[yellow]No tutorial progress for {user_id}[/yellow]")
        return

    if progress.is_skipped:
        status = "[yellow]skipped[/yellow]"
    elif progress.is_completed:
        status = "[green]completed[/green]"
    else:
        status = "[cyan]in progress[/cyan]"

    console.print(f"[bold]Tutorial progress for {user_id}[/bold]")
    console.print(f"  Status: {status}")
    console.print(f"  Current step: {progress.current_step.value}")
    console.print(
        f"  Completed steps: {', '.join(s.value for s in progress.completed_steps) or '-'}"
    )
    console.print(
        f"  Completed actions: {', '.join(a.value for a in progress.completed_actions) or '-'}"
    )
    console.print(f"  Errors: {progress.error_count}")
    if progress.last_error:
        console.print(f"  Last error: {progress.last_error}")
    console.print(f"  Started: {progress.started_at}")
    if progress.completed_at:
        console.print(f"  Finished: {progress.completed_at}")


def _report(result: TutorialResult, user_id: str, verb: str) -> None:
    if not result.success:
        console.print(f"[red]Could not {verb} tutorial: {result.error.message}[/red]")
        sys.exit(1)
    _print_progress(result.data, user_id)


def _run(ctx: click.Context, user_id: str, template_id: str | None, operation) -> Any:
    """Run ``operation(manager)`` against the user's tutorial."""
    settings = _settings(ctx)

    async def runner():
        session = create_session(settings)
        definition = session.config_manager.generate_tutorial_for_user(
            user_id, template_id, default_template=settings.default_template
        )
        if definition is None:
            raise click.UsageError(f"Template '{template_id}' not found")
        session.manager.set_definition(user_id, definition)
        return await operation(session.manager)

    try:
        return asyncio.run(runner())
    except click.UsageError:
        raise
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        if ctx.obj.get("verbose"):
            console.print_exception()
        sys.exit(1)


template_option = click.option(
    "--template", "-t", "template_id", default=None, help="Template the user follows"
)


@main.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("user_id")
@click.option("--template", "-t", "template_id", default=None, help="Template to use")
@click.option("--returning", is_flag=True, help="Treat the user as returning")
@click.option("--accessible", is_flag=True, help="The user has accessibility needs")
@click.option("--pace", type=click.Choice(["slow", "normal", "fast"]), default=None)
@click.pass_context
def start(
    ctx: click.Context,
    user_id: str,
    template_id: str | None,
    returning: bool,
    accessible: bool,
    pace: str | None,
) -> None:
    """Create or resume the tutorial of USER_ID."""
    settings = _settings(ctx)
    traits = UserTraits(
        is_returning_user=returning, has_accessibility_needs=accessible, preferred_pace=pace
    )

    async def runner() -> TutorialResult:
        session = create_session(settings)
        try:
            return await session.start(user_id, template_id=template_id, traits=traits)
        finally:
            await session.stop()

    try:
        result = asyncio.run(runner())
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    _report(result, user_id, "start")


@main.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("user_id")
@template_option
@click.pass_context
def progress(ctx: click.Context, user_id: str, template_id: str | None) -> None:
    """Show the tutorial progress of USER_ID."""

    async def operation(manager: TutorialManager):
        return await manager.get_progress(user_id)

    _print_progress(_run(ctx, user_id, template_id, operation), user_id)


@main.command(name="next", context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("user_id")
@template_option
@click.pass_context
def next_step(ctx: click.Context, user_id: str, template_id: str | None) -> None:
    """Advance USER_ID past their current step."""

    async def operation(manager: TutorialManager) -> TutorialResult:
        current = await manager.get_progress(user_id)
        if current is None:
            return await manager.initialize_tutorial(user_id)
        return await manager.advance_to_next_step(user_id, current.current_step)

    _report(_run(ctx, user_id, template_id, operation), user_id, "advance")


@main.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("user_id")
@template_option
@click.option("--all", "skip_all", is_flag=True, help="Skip the whole tutorial")
@click.pass_context
def skip(ctx: click.Context, user_id: str, template_id: str | None, skip_all: bool) -> None:
    """Skip the current step of USER_ID, or the whole tutorial with --all."""

    async def operation(manager: TutorialManager) -> TutorialResult:
        if skip_all:
            return await manager.skip_tutorial(user_id)
        current = await manager.get_progress(user_id)
        if current is None:
            return TutorialResult(
                success=False,
                error=manager.error_handler.create_error(
                    ErrorCode.INVALID_STATE, f"No tutorial progress for {user_id}"
                ),
            )
        return await manager.skip_step(user_id, current.current_step)

    _report(_run(ctx, user_id, template_id, operation), user_id, "skip")


@main.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("user_id")
@template_option
@click.pass_context
def restart(ctx: click.Context, user_id: str, template_id: str | None) -> None:
    """Restart the tutorial of USER_ID from the first step."""

    async def operation(manager: TutorialManager) -> TutorialResult:
        return await manager.restart_tutorial(user_id)

    _report(_run(ctx, user_id, template_id, operation), user_id, "restart")


@main.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("user_id")
@click.argument("action")
@template_option
@click.pass_context
def complete(ctx: click.Context, user_id: str, action: str, template_id: str | None) -> None:
    """Record that USER_ID performed ACTION and resume their tutorial.

    \b
    Examples:
      tutorflow complete alice tab_click
    """

    async def operation(manager: TutorialManager):
        if not await manager.mark_action_completed(user_id, action):
            return None
        return await manager.resume_tutorial(user_id)

    result = _run(ctx, user_id, template_id, operation)
    if result is None:
        console.print(f"[red]Could not record action '{action}' for {user_id}[/red]")
        sys.exit(1)
    _print_progress(result, user_id)


@main.command(context_settings={"help_option_names": ["-h", "--help"]})
def errors() -> None:
    """Show the error taxonomy and its recovery policy."""
    table = Table(title="Tutorial Error Codes", show_header=True, header_style="bold")
    table.add_column("Code", style="cyan", no_wrap=True)
    table.add_column("Retryable", justify="center")
    table.add_column("Recoverable", justify="center")
    table.add_column("User Message")

    for code in ErrorCode:
        table.add_row(
            code.value,
            "yes" if is_retryable(code) else "no",
            "yes" if is_recoverable(code) else "no",
            FRIENDLY_MESSAGES.get(code, ""),
        )
    console.print(table)


if __name__ == "__main__":
    main()
