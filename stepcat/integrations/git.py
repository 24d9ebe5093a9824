"""Thin wrappers around the git CLI for the work directory."""

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Optional

from stepcat.errors import PushError, StepcatError
from stepcat.logging import get_logger

logger = get_logger(__name__)

_GITHUB_REMOTE = re.compile(r"github\.com[:/]([^/]+)/([^/.]+)")


def head_commit(work_dir: Path | str) -> Optional[str]:
    try:
        return subprocess.check_output(
            ["git", "rev-parse", "HEAD"],
            cwd=work_dir,
            text=True,
            stderr=subprocess.PIPE,
        ).strip()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def current_branch(work_dir: Path | str) -> str:
    try:
        branch = subprocess.check_output(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            cwd=work_dir,
            text=True,
            stderr=subprocess.PIPE,
        ).strip()
        return branch or "HEAD"
    except (subprocess.CalledProcessError, FileNotFoundError):
        return "HEAD"


def working_tree_status(work_dir: Path | str) -> str:
    """Return ``git status --short`` output, or an explanatory line on failure."""

    try:
        result = subprocess.run(
            ["git", "status", "--short"],
            cwd=work_dir,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        return f"git not available: {exc}"
    if result.returncode != 0:
        return f"git status failed: {result.stderr.strip() or 'unknown error'}"
    return result.stdout.strip() or "clean"


def push(work_dir: Path | str, remote: str = "origin", branch: Optional[str] = None) -> str:
    """Push ``branch`` (default: the current branch) and return git's output."""

    target_branch = branch or current_branch(work_dir)
    command = ["git", "push", remote, target_branch]
    try:
        result = subprocess.run(command, cwd=work_dir, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise PushError(f"Failed to push commit to GitHub: git not available ({exc})") from exc

    if result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "no diagnostics"
        logger.warning("git push failed: %s", message)
        raise PushError(f"Failed to push commit to GitHub: {message}")

    return (result.stdout + result.stderr).strip()


def remote_url(work_dir: Path | str, remote: str = "origin") -> str:
    try:
        return subprocess.check_output(
            ["git", "remote", "get-url", remote],
            cwd=work_dir,
            text=True,
            stderr=subprocess.PIPE,
        ).strip()
    except subprocess.CalledProcessError as exc:
        raise StepcatError(
            f"Failed to read git remote '{remote}': {exc.stderr.strip() if exc.stderr else exc}"
        ) from exc
    except FileNotFoundError as exc:
        raise StepcatError(f"git not available: {exc}") from exc


def parse_repo_info(url: str) -> tuple[str, str]:
    """Extract ``(owner, repo)`` from an HTTPS or SSH GitHub remote URL."""

    match = _GITHUB_REMOTE.search(url)
    if not match:
        raise StepcatError(f"Could not parse GitHub owner/repo from remote URL: {url}")
    return match.group(1), match.group(2)


__all__ = [
    "current_branch",
    "head_commit",
    "parse_repo_info",
    "push",
    "remote_url",
    "working_tree_status",
]
