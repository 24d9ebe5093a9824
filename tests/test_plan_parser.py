from pathlib import Path

import pytest

from stepcat.errors import PlanParseError
from stepcat.plan_parser import PlanStep, load_plan, parse_plan


def test_parses_steps_in_numeric_order():
    text = """# Plan

## Step 2: Add the API
Details.

## Step 1: Set up the project

## step 3:   Write docs
"""
    assert parse_plan(text) == [
        PlanStep(1, "Set up the project"),
        PlanStep(2, "Add the API"),
        PlanStep(3, "Write docs"),
    ]


def test_strips_phase_markers_from_titles():
    steps = parse_plan("## Step 1: Scaffold [done]\n## Step 2: Wire CI [review] [implementation]\n")

    assert [step.title for step in steps] == ["Scaffold", "Wire CI"]


def test_ignores_non_step_headings():
    steps = parse_plan("## Overview\n### Step 9: nested\n## Step 1: Only one\n")

    assert steps == [PlanStep(1, "Only one")]


def test_empty_plan_is_rejected():
    with pytest.raises(PlanParseError, match="No steps found"):
        parse_plan("# Nothing to do\n")


def test_duplicate_step_numbers_are_rejected():
    with pytest.raises(PlanParseError, match="Duplicate step numbers found: 2"):
        parse_plan("## Step 1: A\n## Step 2: B\n## Step 2: C\n")


def test_load_plan_returns_text_and_steps(tmp_path: Path):
    plan = tmp_path / "plan.md"
    plan.write_text("## Step 1: Build it\n", encoding="utf-8")

    text, steps = load_plan(plan)

    assert text.startswith("## Step 1")
    assert steps == [PlanStep(1, "Build it")]


def test_load_plan_missing_file(tmp_path: Path):
    with pytest.raises(PlanParseError, match="Unable to read plan file"):
        load_plan(tmp_path / "missing.md")
