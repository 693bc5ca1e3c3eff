"""Click CLI: config loading, provider selection, evaluation runs, output, and the API server."""

import asyncio
import dataclasses
import logging
import signal
import sys
from pathlib import Path

import click
import uvicorn
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, OrchestratorConfig, load_config
from pitch_council.costing import BudgetExceededError, CostEstimator, tiktoken_counter
from pitch_council.inbox import archive_file, ensure_dirs, parse_file, scan_inbox
from pitch_council.models import ConversationTurn, EvaluationResult, HaltReason, PartialResult
from pitch_council.orchestrator import MODES, EvaluationOrchestrator
from pitch_council.output import print_pitch, print_result, print_turn, save_to_file
from pitch_council.providers import ProviderError, build_provider
from pitch_council.roles import RoleRegistry
from pitch_council.server import create_app

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _load_config_or_exit() -> AppConfig:
    try:
        return load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)


def _orchestrator_settings(base: OrchestratorConfig, mode: str, rounds: int | None) -> OrchestratorConfig:
    """Apply a --rounds override to the ceiling that matters for ``mode``."""
    if rounds is None:
        return base
    if mode == "iterative":
        return dataclasses.replace(base, max_iterations=rounds)
    return dataclasses.replace(base, max_rounds=rounds)


def _build_orchestrator(
    config: AppConfig,
    provider_name: str,
    mode: str,
    rounds: int | None,
) -> EvaluationOrchestrator:
    """Raises ProviderError (unknown provider, missing key) or KeyError (no pricing)."""
    if provider_name not in config.models:
        raise ProviderError(provider_name, f"Unknown provider; configured: {', '.join(sorted(config.models))}")
    model_cfg = config.models[provider_name]
    return EvaluationOrchestrator(
        provider=build_provider(model_cfg),
        roles=RoleRegistry.from_config(config.roles),
        estimator=CostEstimator(config.pricing_for(provider_name), tiktoken_counter(model_cfg.model)),
        settings=_orchestrator_settings(config.orchestrator, mode, rounds),
        mode=mode,
    )


def _install_stop_handler(orchestrator: EvaluationOrchestrator) -> None:
    """First Ctrl-C stops cooperatively after the in-flight call; a second one aborts."""
    loop = asyncio.get_running_loop()

    def on_sigint() -> None:
        console.print("\n[yellow]Stopping after the current turn... (Ctrl-C again to abort)[/yellow]")
        orchestrator.stop()
        loop.remove_signal_handler(signal.SIGINT)

    try:
        loop.add_signal_handler(signal.SIGINT, on_sigint)
    except (NotImplementedError, RuntimeError):
        # Windows event loops have no signal handlers; Ctrl-C aborts instead
        logger.debug("Cooperative Ctrl-C stop unavailable on this platform")


async def _run_single(
    idea: str,
    source: str,
    config: AppConfig,
    provider_name: str,
    budget: float,
    mode: str,
    rounds: int | None,
    output_dir: Path,
    slug_override: str | None = None,
) -> Path | None:
    """Run one evaluation; returns the saved document path, or None when halted early."""
    orchestrator = _build_orchestrator(config, provider_name, mode, rounds)
    _install_stop_handler(orchestrator)

    console.print(f"\n[bold cyan]Pitch Council[/bold cyan] | {mode} mode, {provider_name}, budget ${budget:.2f}")
    console.print(f"Idea: [italic]{idea[:80]}{'...' if len(idea) > 80 else ''}[/italic]\n")

    outcome: dict[str, object] = {}

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Evaluating...", total=None)

        def on_progress(step: int, turn: ConversationTurn, cost: float) -> None:
            snapshot = orchestrator.snapshot()
            print_turn(turn, snapshot.budget, snapshot.accumulated_cost)
            progress.update(
                task,
                description=f"Step {step + 1}: ${snapshot.accumulated_cost:.2f} of ${snapshot.budget:.2f} spent",
            )

        def on_partial(partial: PartialResult) -> None:
            outcome["partial"] = partial

        def on_complete(result: EvaluationResult) -> None:
            outcome["result"] = result

        def on_halt(reason: HaltReason) -> None:
            outcome["halt"] = reason

        await orchestrator.start(
            idea,
            budget,
            on_progress=on_progress,
            on_partial=on_partial,
            on_complete=on_complete,
            on_halt=on_halt,
        )

    result = outcome.get("result")
    if result is None:
        reason = outcome.get("halt")
        label = "budget exhausted" if reason is HaltReason.BUDGET else "stopped"
        console.print(f"\n[bold yellow]Evaluation {label}[/bold yellow] before a final decision.")
        partial = outcome.get("partial")
        if partial is not None and partial.pitch is not None:
            console.print("[dim]Latest draft pitch:[/dim]")
            print_pitch(partial.pitch)
        return None

    print_result(result, budget)
    saved_path = save_to_file(result, idea, budget, output_dir, slug_override=slug_override, source=source)
    console.print(f"\n[dim]Saved to: {saved_path}[/dim]")
    return saved_path


async def _run_inbox(
    config: AppConfig,
    inbox_dir: Path,
    archive_dir: Path,
    provider_name: str,
    budget_cli: float | None,
    mode_cli: str | None,
    rounds_cli: int | None,
    output_dir: Path,
) -> None:
    """Evaluate all .md files in the inbox folder.

    Precedence for per-file settings: CLI flag > frontmatter > config default.
    """
    ensure_dirs(inbox_dir, archive_dir)
    files = scan_inbox(inbox_dir)

    if not files:
        click.echo("No files in inbox.")
        return

    for file_path in files:
        try:
            item = parse_file(file_path)
            budget = budget_cli if budget_cli is not None else item.budget or config.defaults.budget
            mode = mode_cli or item.mode or config.orchestrator.mode
            rounds = rounds_cli if rounds_cli is not None else item.rounds
            if mode not in MODES:
                raise ValueError(f"Unknown mode '{mode}'")

            saved = await _run_single(
                idea=item.idea,
                source=str(file_path),
                config=config,
                provider_name=provider_name,
                budget=budget,
                mode=mode,
                rounds=rounds,
                output_dir=output_dir,
                slug_override=file_path.stem,
            )
            if saved is None:
                raise RuntimeError("evaluation halted before a final decision")
            archived = archive_file(file_path, archive_dir)
            click.echo(f"Processed: {file_path.name} -> {saved} (archived: {archived.name})")
        except Exception as e:
            logger.error("Failed: %s -- %s", file_path.name, e)
            archive_file(file_path, archive_dir, failed=True)


@click.group()
def main() -> None:
    """Pitch Council -- multi-agent startup idea evaluation under a budget.

    \b
    Examples:
      pitch-council evaluate "A subscription box for artisanal coffee" --budget 5
      pitch-council evaluate --file idea.md --mode iterative --rounds 3
      pitch-council evaluate --inbox
      pitch-council serve --port 8000
    """
    # Model replies often contain non-ASCII characters; Windows consoles default to cp1252
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")
    load_dotenv()


@main.command()
@click.argument("idea", required=False)
@click.option("--file", "idea_file", type=click.Path(exists=True), help="Read the idea from a .md file")
@click.option("--budget", default=None, type=float, help="Spending cap in USD (default: from config)")
@click.option("--mode", default=None, type=click.Choice(MODES), help="Conversation shape (default: from config)")
@click.option("--provider", default=None, help="Model provider to use (default: from config)")
@click.option("--rounds", default=None, type=int, help="Debate rounds or iterations (default: from config)")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--inbox", "use_inbox", is_flag=True, default=False, help="Evaluate all .md files in inbox folder")
@click.option("--inbox-dir", "inbox_dir_override", default=None,
              help="Override inbox folder path (default: from config)")
def evaluate(
    idea: str | None,
    idea_file: str | None,
    budget: float | None,
    mode: str | None,
    provider: str | None,
    rounds: int | None,
    output_path: str | None,
    verbose: bool,
    use_inbox: bool,
    inbox_dir_override: str | None,
) -> None:
    """Evaluate a startup IDEA and write an investor document."""
    _setup_logging(verbose)
    config = _load_config_or_exit()

    if budget is not None and budget <= 0:
        console.print("[bold red]Error:[/bold red] --budget must be positive.")
        sys.exit(1)
    if rounds is not None and rounds < 1:
        console.print("[bold red]Error:[/bold red] --rounds must be at least 1.")
        sys.exit(1)

    provider_name = provider or config.defaults.provider
    effective_output = Path(output_path) if output_path else config.defaults.output_dir

    if use_inbox:
        inbox_dir = Path(inbox_dir_override) if inbox_dir_override else config.inbox.dir
        asyncio.run(
            _run_inbox(
                config=config,
                inbox_dir=inbox_dir,
                archive_dir=config.inbox.archive_dir,
                provider_name=provider_name,
                budget_cli=budget,
                mode_cli=mode,
                rounds_cli=rounds,
                output_dir=effective_output,
            )
        )
        return

    if not idea_file and not idea:
        console.print("[bold red]Error:[/bold red] Provide an IDEA argument, --file, or --inbox.")
        sys.exit(1)

    try:
        if idea_file:
            idea_text = parse_file(Path(idea_file)).idea
            source = idea_file
        else:
            idea_text = idea
            source = "cli"
        saved = asyncio.run(
            _run_single(
                idea=idea_text,
                source=source,
                config=config,
                provider_name=provider_name,
                budget=budget if budget is not None else config.defaults.budget,
                mode=mode or config.orchestrator.mode,
                rounds=rounds,
                output_dir=effective_output,
            )
        )
    except (BudgetExceededError, ProviderError, KeyError, ValueError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)
    if saved is None:
        sys.exit(2)


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def serve(host: str, port: int, verbose: bool) -> None:
    """Run the HTTP polling API."""
    _setup_logging(verbose)
    config = _load_config_or_exit()
    try:
        app = create_app(config)
    except KeyError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)
    uvicorn.run(app, host=host, port=port, log_level="debug" if verbose else "info")


if __name__ == "__main__":
    main()
