"""Prompt builders for implementation, fix and review agent runs."""

from __future__ import annotations

import json
from textwrap import dedent
from typing import Iterable

from stepcat.models import Issue

_COMMIT_RULES = dedent(
    """\
    Requirements:
    - You must create a new git commit; the task is not complete without one.
    - Do not amend existing commits and do not push; stepcat pushes for you.
    - Do not ask for confirmation before committing.
    - Do not edit the plan file.
    """
)

_EMPTY_COMMIT_HINT = (
    "If no change is required, record that with an empty commit:\n"
    '  git commit --allow-empty -m "No changes needed: <reason>"\n'
)

_REVIEW_FORMAT = dedent(
    """\
    Reply with a single JSON object and nothing else:
    {
      "result": "PASS" or "FAIL",
      "issues": [
        {
          "file": "path/to/file",
          "line": 123,
          "severity": "error" or "warning",
          "description": "what is wrong and how to fix it"
        }
      ]
    }

    Return {"result": "PASS", "issues": []} when there is nothing to fix.
    "line" may be omitted. Use "error" for defects and "warning" for suggestions.
    """
)


def _commit_template(plan_file: str, step_number: int, stage: str) -> str:
    return (
        "Use a commit message such as:\n\n"
        f"Plan: {plan_file}\nStep: {step_number}\nStage: {stage}\n\n<summary of your changes>\n"
    )


def implementation_prompt(step_number: int, step_title: str, plan_file: str) -> str:
    return (
        f"Implement Step {step_number} ({step_title}) of the plan at {plan_file}.\n\n"
        "Follow the plan exactly. Check that the preconditions the plan describes are in "
        "place before you start.\n\n"
        "When you are done, run the project's build, lint and test commands (see the "
        "README, Makefile, justfile, pyproject.toml or package.json) and fix what fails.\n\n"
        + _commit_template(plan_file, step_number, "implementation")
        + "\n"
        + _COMMIT_RULES
    )


def build_fix_prompt(step_number: int, plan_file: str, build_errors: str) -> str:
    return (
        "The GitHub Actions build failed:\n\n"
        f"---\n{build_errors}\n---\n\n"
        "Find the cause, fix it, and commit the fix.\n\n"
        + _commit_template(plan_file, step_number, "build fix")
        + "\n"
        + _EMPTY_COMMIT_HINT
        + "\n"
        + _COMMIT_RULES
    )


def continue_interrupted_prompt(step_number: int, step_title: str, plan_file: str) -> str:
    return (
        f"Your previous session was interrupted while implementing Step {step_number}: "
        f"{step_title} of the plan at {plan_file}.\n\n"
        "The working directory has uncommitted changes. Review them with `git status` and "
        "`git diff`. If the work is incomplete, finish it. Then run the project's build, "
        "lint and test commands and fix what fails.\n\n"
        + _commit_template(plan_file, step_number, "implementation")
        + "\n"
        + _COMMIT_RULES
    )


def format_review_issues(issues: Iterable[Issue]) -> str:
    lines = []
    for issue in issues:
        location = issue.file_path or "unknown"
        if issue.line_number is not None:
            location = f"{location}:{issue.line_number}"
        severity = issue.severity.value if issue.severity else "error"
        lines.append(f"- [{severity}] {location}: {issue.description}")
    return "\n".join(lines)


def review_fix_prompt(step_number: int, plan_file: str, issues: Iterable[Issue]) -> str:
    return (
        "A code review raised these possible issues:\n\n"
        f"---\n{format_review_issues(issues)}\n---\n\n"
        "Fix each legitimate issue. For false positives, explain in the commit message why "
        "the code is already correct.\n\n"
        + _commit_template(plan_file, step_number, "code review fix")
        + "\n"
        + _EMPTY_COMMIT_HINT
        + "\n"
        + _COMMIT_RULES
    )


def review_implementation_prompt(
    step_number: int, step_title: str, plan_content: str, commit_sha: str
) -> str:
    return (
        f"Commit {commit_sha} is the first implementation of Step {step_number}: "
        f"{step_title} from this plan:\n\n"
        f"---\n{plan_content}\n---\n\n"
        f"Inspect it with `git show {commit_sha}` and review it for correctness, code "
        "quality and adherence to the plan.\n\n" + _REVIEW_FORMAT
    )


def review_build_fix_prompt(build_errors: str, commit_sha: str) -> str:
    return (
        "This commit tries to fix the following build failures:\n\n"
        f"---\n{build_errors}\n---\n\n"
        f"Inspect it with `git show {commit_sha}` and check that the failures are "
        "properly addressed.\n\n" + _REVIEW_FORMAT
    )


def review_code_fixes_prompt(issues: Iterable[Issue], commit_sha: str) -> str:
    payload = [
        {
            key: value
            for key, value in {
                "file": issue.file_path or "unknown",
                "line": issue.line_number,
                "severity": issue.severity.value if issue.severity else "error",
                "description": issue.description,
            }.items()
            if value is not None
        }
        for issue in issues
    ]
    return (
        "This commit tries to fix these issues from the previous review:\n\n"
        f"---\n{json.dumps(payload, indent=2)}\n---\n\n"
        f"Inspect it with `git show {commit_sha}` and check that each one is "
        "properly addressed.\n\n" + _REVIEW_FORMAT
    )


__all__ = [
    "build_fix_prompt",
    "continue_interrupted_prompt",
    "format_review_issues",
    "implementation_prompt",
    "review_build_fix_prompt",
    "review_code_fixes_prompt",
    "review_fix_prompt",
    "review_implementation_prompt",
]
