"""Inbox folder scanning, frontmatter parsing, and archive logic."""

import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import frontmatter
import yaml


@dataclass
class InboxIdea:
    """One idea file: body text plus the per-file overrides found in its frontmatter."""
    path: Path
    idea: str
    budget: float | None = None
    mode: str | None = None
    rounds: int | None = None


def ensure_dirs(inbox_dir: Path, archive_dir: Path) -> None:
    """Create inbox and archive directories if they don't exist."""
    inbox_dir.mkdir(parents=True, exist_ok=True)
    archive_dir.mkdir(parents=True, exist_ok=True)


def scan_inbox(inbox_dir: Path) -> list[Path]:
    """Return all .md files in inbox_dir, sorted by mtime ascending (oldest first)."""
    files = list(inbox_dir.glob("*.md"))
    return sorted(files, key=lambda p: p.stat().st_mtime)


def parse_file(file_path: Path) -> InboxIdea:
    """Parse a markdown idea file with optional YAML frontmatter.

    Recognised keys: ``budget`` (float), ``mode`` ("debate" / "iterative"),
    ``rounds`` (int). Other keys are ignored.

    Raises ValueError if the frontmatter is malformed or a recognised key has
    an unusable value.
    """
    try:
        post = frontmatter.load(str(file_path))
    except yaml.YAMLError as exc:
        raise ValueError(f"{file_path.name}: malformed frontmatter ({exc})") from exc
    meta = post.metadata
    try:
        budget = float(meta["budget"]) if "budget" in meta else None
        rounds = int(meta["rounds"]) if "rounds" in meta else None
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{file_path.name}: invalid frontmatter value ({exc})") from exc
    return InboxIdea(
        path=file_path,
        idea=post.content.strip(),
        budget=budget,
        mode=str(meta["mode"]) if "mode" in meta else None,
        rounds=rounds,
    )


def archive_file(file_path: Path, archive_dir: Path, *, failed: bool = False) -> Path:
    """Move file to archive_dir with a timestamp prefix.

    Args:
        file_path: Source file to archive.
        archive_dir: Destination directory.
        failed: If True, prefix filename with "FAILED_".

    Returns:
        Path to the archived file.
    """
    timestamp = datetime.now().strftime("%Y-%m-%dT%H%M")
    prefix = "FAILED_" if failed else ""
    dest = archive_dir / f"{prefix}{timestamp}_{file_path.name}"
    shutil.move(str(file_path), str(dest))
    return dest
