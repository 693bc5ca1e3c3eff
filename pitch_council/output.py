"""Rich console output and markdown investor document for evaluation results."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from pitch_council.models import AgentRole, ConversationTurn, Decision, EvaluationResult, StartupPitch

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_ROLE_STYLES = {
    AgentRole.CLARIFIER: "cyan",
    AgentRole.CRITIC: "red",
    AgentRole.DEFENDER: "green",
    AgentRole.PROPOSER: "green",
    AgentRole.ASSESSOR: "magenta",
    AgentRole.INVESTOR: "yellow",
    AgentRole.SYSTEM: "dim",
}

_PITCH_SECTIONS = (
    ("Problem", "problem"),
    ("Solution", "solution"),
    ("Market", "market"),
    ("Business Model", "business_model"),
    ("Competitive Advantage", "competitive_advantage"),
    ("Execution Plan", "execution_plan"),
)


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _preview(content: str, words: int = 50) -> str:
    """Return first N words of a turn."""
    all_words = content.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def print_turn(turn: ConversationTurn, budget: float, total_cost: float) -> None:
    """Print one transcript turn as it happens."""
    if turn.role is AgentRole.SYSTEM:
        console.print(Text(f"  {turn.content}", style="dim italic"))
        return
    style = _ROLE_STYLES[turn.role]
    cost = f"${turn.cost:.4f}" if turn.cost is not None else "n/a"
    console.print(
        Panel(
            _preview(turn.content),
            title=f"[bold {style}]{turn.role.value.title()}[/bold {style}] (round {turn.round_number})",
            subtitle=f"{cost} | ${total_cost:.2f} of ${budget:.2f}",
            border_style="dim",
        )
    )


def print_pitch(pitch: StartupPitch) -> None:
    table = Table(title=pitch.name, show_header=False, expand=True)
    table.add_column("Section", style="bold", no_wrap=True)
    table.add_column("Content")
    for label, attr in _PITCH_SECTIONS:
        table.add_row(label, getattr(pitch, attr))
    console.print(table)


def print_result(result: EvaluationResult, budget: float) -> None:
    """Print the final pitch and investor verdict."""
    verdict = result.verdict
    console.print(Rule("[bold green]Startup Pitch[/bold green]"))
    print_pitch(result.pitch)

    console.print(Rule("[bold yellow]Investor Verdict[/bold yellow]"))
    colour = "green" if verdict.decision is Decision.INVEST else "red"
    console.print(
        Text(
            f"{verdict.decision.value.upper()} | confidence {verdict.confidence}% | "
            f"rounds {result.rounds} | cost ${result.total_cost:.2f} of ${budget:.2f}",
            style=f"bold {colour}",
        )
    )
    console.print(Markdown(_verdict_markdown(result)))


def _bullets(items: list[str]) -> list[str]:
    return [f"- {item}" for item in items] or ["- (none)"]


def _verdict_markdown(result: EvaluationResult) -> str:
    verdict = result.verdict
    lines = [verdict.reasoning, "", "**Strengths**", ""]
    lines += _bullets(verdict.strengths)
    lines += ["", "**Concerns**", ""]
    lines += _bullets(verdict.concerns)
    lines += ["", "**Recommended Next Steps**", ""]
    lines += _bullets(verdict.recommended_next)
    return "\n".join(lines)


def render_markdown(result: EvaluationResult, idea: str, budget: float, source: str = "cli") -> str:
    """Render the investor document: pitch, verdict, spend summary and full transcript."""
    pitch = result.pitch
    verdict = result.verdict

    lines: list[str] = [
        f"# Investor Document: {pitch.name}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Idea:** {idea[:200]}",
        f"**Decision:** {verdict.decision.value.upper()} ({verdict.confidence}% confidence)",
        f"**Rounds:** {result.rounds}",
        f"**Cost:** ${result.total_cost:.2f} of ${budget:.2f} budget",
        f"**Source:** {source}",
        "",
        "---",
        "",
        "## Startup Pitch",
        "",
    ]
    for label, attr in _PITCH_SECTIONS:
        lines += [f"### {label}", "", getattr(pitch, attr), ""]

    lines += ["## Investment Verdict", "", _verdict_markdown(result), "", "---", "", "## Transcript", ""]

    for turn in result.transcript:
        if turn.role is AgentRole.SYSTEM:
            lines += [f"> {turn.content}", ""]
            continue
        lines += [f"### {turn.role.value.title()} (round {turn.round_number})", "", turn.content, ""]
        if turn.cost is not None:
            lines += [f"*Cost: ${turn.cost:.4f}*", ""]

    return "\n".join(lines)


def save_to_file(
    result: EvaluationResult,
    idea: str,
    budget: float,
    output_dir: Path,
    slug_override: str | None = None,
    source: str = "cli",
) -> Path:
    """Save the investor document as a markdown file.

    Args:
        result: The completed EvaluationResult.
        idea: The idea as originally submitted.
        budget: Budget ceiling the evaluation ran under.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the pitch name. Useful for inbox mode.
        source: Where the idea came from ("cli", a file path).

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(result.pitch.name) or _slug(idea)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    filepath.write_text(render_markdown(result, idea, budget, source), encoding="utf-8")
    logger.info("Investor document saved to: %s", filepath)
    return filepath
