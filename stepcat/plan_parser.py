"""Extract ``## Step N: Title`` headers from a Markdown plan."""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from pathlib import Path

from stepcat.errors import PlanParseError

_STEP_HEADER = re.compile(r"^##\s+Step\s+(\d+):\s+(.+)$", re.IGNORECASE | re.MULTILINE)
_PHASE_MARKER = re.compile(r"\s*\[(?:done|review|implementation)\]\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class PlanStep:
    number: int
    title: str


def _clean_title(raw: str) -> str:
    title = raw.strip()
    while True:
        stripped = _PHASE_MARKER.sub("", title)
        if stripped == title:
            return title.strip()
        title = stripped


def parse_plan(text: str) -> list[PlanStep]:
    """Return the plan's steps ordered by step number.

    Raises :class:`PlanParseError` when the plan has no step headers or
    repeats a step number.
    """

    steps = [
        PlanStep(number=int(match.group(1)), title=_clean_title(match.group(2)))
        for match in _STEP_HEADER.finditer(text)
    ]

    if not steps:
        raise PlanParseError(
            "No steps found in plan file. Expected format: ## Step N: Description"
        )

    counts = Counter(step.number for step in steps)
    duplicates = sorted(number for number, count in counts.items() if count > 1)
    if duplicates:
        listed = ", ".join(str(number) for number in duplicates)
        raise PlanParseError(f"Duplicate step numbers found: {listed}")

    return sorted(steps, key=lambda step: step.number)


def load_plan(path: Path | str) -> tuple[str, list[PlanStep]]:
    """Read ``path`` and return its raw text alongside the parsed steps."""

    plan_path = Path(path)
    try:
        text = plan_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PlanParseError(f"Unable to read plan file {plan_path}: {exc}") from exc
    return text, parse_plan(text)


__all__ = ["PlanStep", "load_plan", "parse_plan"]
