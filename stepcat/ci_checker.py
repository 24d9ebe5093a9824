"""Infer the CI verdict for a commit from GitHub check runs, suites and PR state."""

from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Callable, Optional

import requests

from stepcat.errors import CITimeoutError, GitHubAPIError, MergeConflictError, StepcatError
from stepcat.events import EventEmitter, GitHubCheckEvent, LogEvent
from stepcat.integrations import git
from stepcat.integrations.github import GitHubClient
from stepcat.logging import get_logger

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 30.0
PASSING_CONCLUSIONS = frozenset({"success", "skipped"})
PENDING_SUITE_STATUSES = frozenset({"queued", "in_progress", "requested", "waiting", "pending"})
FAILING_SUITE_CONCLUSIONS = frozenset(
    {"failure", "timed_out", "action_required", "cancelled", "startup_failure"}
)
MAX_BUILD_OUTPUT_CHARS = 8000
MAX_ANNOTATIONS = 20
MAX_ANNOTATION_CHARS = 500
GENERIC_BUILD_FAILURE = (
    "Build checks failed. Please review the GitHub Actions logs and fix the issues."
)

_WHITESPACE = re.compile(r"\s+")


def truncate_log(text: str, max_chars: int) -> str:
    """Keep the tail of ``text``; failures are usually reported last."""

    if len(text) <= max_chars:
        return text
    dropped = len(text) - max_chars
    return f"... (truncated {dropped} chars)\n{text[dropped:]}"


def _single_line(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


class GitHubChecker:
    """Polls GitHub until the tracked commit's checks pass, fail or time out.

    The tracked sha starts as the requested commit. While that commit has no
    check runs it moves to the open pull request's head, provided the head is a
    fast-forward of it and CI has already started on it. Check runs are
    required to complete successfully, after which the commit's check suites
    must also have concluded without failure.
    """

    def __init__(
        self,
        client: GitHubClient,
        work_dir: Path | str,
        *,
        emitter: Optional[EventEmitter] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.work_dir = Path(work_dir)
        self.emitter = emitter
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self._last_tracked_sha: Optional[str] = None

    @property
    def owner(self) -> str:
        return self.client.owner

    @property
    def repo(self) -> str:
        return self.client.repo

    @staticmethod
    def parse_repo_info(work_dir: Path | str) -> tuple[str, str]:
        try:
            return git.parse_repo_info(git.remote_url(work_dir))
        except StepcatError as exc:
            raise StepcatError(
                f"Failed to get repository information: {exc}\n"
                "Make sure you are in a git repository with a GitHub origin remote."
            ) from exc

    def get_latest_commit_sha(self) -> str:
        sha = git.head_commit(self.work_dir)
        if not sha:
            raise StepcatError(f"Unable to read HEAD in {self.work_dir}")
        return sha

    def get_last_tracked_sha(self) -> Optional[str]:
        return self._last_tracked_sha

    def current_branch(self) -> str:
        return git.current_branch(self.work_dir)

    def wait_for_checks_to_pass(
        self,
        sha: str,
        timeout_minutes: float = 30,
        attempt: int = 1,
        max_attempts: int = 1,
        iteration_id: Optional[int] = None,
    ) -> bool:
        """Return ``True`` once CI passes for the tracked sha, ``False`` on failure.

        Raises :class:`MergeConflictError` as soon as the open pull request is
        reported as conflicting and :class:`CITimeoutError` when the wall-clock
        budget runs out.
        """

        start = self._clock()
        budget = timeout_minutes * 60
        tracked = sha
        self._last_tracked_sha = tracked

        self._log(f"Waiting for GitHub Actions checks (max {timeout_minutes:g} minutes)")
        self._log(f"Repository: {self.owner}/{self.repo}")
        self._log(f"Commit: {sha}")

        while self._clock() - start < budget:
            elapsed = int(self._clock() - start)
            try:
                pull = self._open_pull_request()
                runs = self._runs_for(tracked)
                if not runs and pull is not None:
                    head_sha, head_runs = self._superseding_head(tracked, pull)
                    if head_runs:
                        self._log(
                            f"PR #{pull['number']} head {head_sha[:7]} supersedes "
                            f"{tracked[:7]}; tracking it instead"
                        )
                        tracked, runs = head_sha, head_runs
                self._last_tracked_sha = tracked

                if not runs:
                    self._log(f"[{elapsed}s] No checks found yet for {tracked[:7]}, waiting...")
                    self._sleep(self.poll_interval)
                    continue

                completed = [run for run in runs if run.get("status") == "completed"]
                if len(completed) < len(runs):
                    summary = f"{len(completed)}/{len(runs)} checks completed"
                    self._log(f"[{elapsed}s] Checks in progress: {summary}")
                    for run in runs:
                        if run.get("status") == "completed":
                            state = run.get("conclusion")
                        else:
                            state = run.get("status")
                        self._log(f"  - {run.get('name')}: {state}")
                    self._emit_check(
                        "running", tracked, attempt, max_attempts, iteration_id, summary=summary
                    )
                    self._sleep(self.poll_interval)
                    continue

                failed = [run for run in runs if run.get("conclusion") not in PASSING_CONCLUSIONS]
                if failed:
                    self._log("Some checks failed:", "error")
                    for run in runs:
                        passed = run.get("conclusion") in PASSING_CONCLUSIONS
                        label = "ok" if passed else "FAILED"
                        self._log(
                            f"  {label} {run.get('name')}: {run.get('conclusion')}",
                            "success" if passed else "error",
                        )
                    return False

                suites = self._suite_verdict(tracked)
                if suites == "pending":
                    self._log(f"[{elapsed}s] Check runs passed; waiting for check suites to finish")
                    self._sleep(self.poll_interval)
                    continue
                if suites == "failed":
                    return False

                self._log("All checks passed:", "success")
                for run in runs:
                    self._log(f"  ok {run.get('name')}: {run.get('conclusion')}", "success")
                return True
            except (GitHubAPIError, requests.RequestException) as exc:
                self._log(f"[{elapsed}s] Error checking GitHub status: {exc}", "error")
                self._log(f"Retrying in {self.poll_interval:g} seconds...", "warn")
                self._sleep(self.poll_interval)

        raise CITimeoutError(tracked, timeout_minutes)

    def _runs_for(self, sha: str) -> list[dict]:
        return [
            run
            for run in self.client.list_check_runs(sha)
            if run.get("head_sha", sha) == sha
        ]

    def _open_pull_request(self) -> Optional[dict]:
        """The open PR for the local branch; raises on a conflicting merge state."""

        branch = self.current_branch()
        if not branch or branch == "HEAD":
            return None

        pulls = self.client.list_open_pulls(branch)
        if not pulls:
            return None

        pull = self.client.get_pull(int(pulls[0]["number"]))
        if pull.get("mergeable_state") == "dirty":
            head = pull.get("head") or {}
            base = pull.get("base") or {}
            raise MergeConflictError(
                pr_number=int(pull["number"]),
                branch=head.get("ref") or branch,
                base_branch=base.get("ref") or "main",
            )
        return pull

    def _superseding_head(self, tracked: str, pull: dict) -> tuple[Optional[str], list[dict]]:
        """Return the PR head and its check runs when it fast-forwards ``tracked``.

        A head that CI has not picked up yet yields no runs, so polling stays
        on ``tracked`` until the head's checks appear.
        """

        head_sha = (pull.get("head") or {}).get("sha")
        if not head_sha or head_sha == tracked:
            return None, []

        try:
            comparison = self.client.compare(tracked, head_sha)
        except GitHubAPIError as exc:
            logger.debug("Cannot compare %s...%s yet: %s", tracked, head_sha, exc)
            return None, []

        if comparison.get("status") != "ahead":
            return None, []
        return head_sha, self._runs_for(head_sha)

    def _suite_verdict(self, sha: str) -> str:
        suites = [
            suite
            for suite in self.client.list_check_suites(sha)
            if suite.get("head_sha", sha) == sha
        ]
        if not suites:
            return "passed"

        if any(suite.get("status") in PENDING_SUITE_STATUSES for suite in suites):
            return "pending"

        failing = [
            suite for suite in suites if suite.get("conclusion") in FAILING_SUITE_CONCLUSIONS
        ]
        if failing:
            self._log("Check suites reported failure:", "error")
            for suite in failing:
                app = (suite.get("app") or {}).get("name") or f"suite {suite.get('id')}"
                self._log(f"  FAILED {app}: {suite.get('conclusion')}", "error")
            return "failed"
        return "passed"

    def describe_failures(self, sha: str) -> str:
        """Human-readable summary of failing check runs, used in build-fix prompts."""

        try:
            runs = self.client.list_check_runs(sha)
        except (GitHubAPIError, requests.RequestException) as exc:
            self._log(f"Warning: Could not extract detailed build errors: {exc}", "warn")
            return GENERIC_BUILD_FAILURE

        failed = [
            run
            for run in runs
            if run.get("status") == "completed"
            and run.get("conclusion") not in PASSING_CONCLUSIONS
        ]
        if not failed:
            return GENERIC_BUILD_FAILURE

        sections = []
        for run in failed:
            output = run.get("output") or {}
            lines = [f"Check: {run.get('name')}", f"Conclusion: {run.get('conclusion')}"]
            if output.get("title"):
                lines.append(f"Title: {_single_line(output['title'])}")
            if output.get("summary"):
                lines.append(f"Summary:\n{truncate_log(output['summary'], MAX_BUILD_OUTPUT_CHARS)}")
            if output.get("text"):
                lines.append(f"Output:\n{truncate_log(output['text'], MAX_BUILD_OUTPUT_CHARS)}")
            annotations = self._annotations_for(run)
            if annotations:
                lines.append(f"Annotations:\n{annotations}")
            if run.get("details_url"):
                lines.append(f"Details: {run['details_url']}")
            sections.append("\n".join(lines) + "\n")
        return "\n---\n".join(sections)

    def _annotations_for(self, run: dict) -> Optional[str]:
        if run.get("id") is None:
            return None
        try:
            annotations = self.client.list_annotations(int(run["id"]))
        except (GitHubAPIError, requests.RequestException) as exc:
            self._log(f"Warning: Could not fetch check run annotations: {exc}", "warn")
            return None
        return format_annotations(annotations)

    def _emit_check(
        self,
        status: str,
        sha: str,
        attempt: int,
        max_attempts: int,
        iteration_id: Optional[int],
        *,
        summary: Optional[str] = None,
    ) -> None:
        if self.emitter is None:
            return
        self.emitter.emit(
            GitHubCheckEvent(
                status=status,
                sha=sha,
                attempt=attempt,
                max_attempts=max_attempts,
                iteration_id=iteration_id,
                check_name=summary,
                summary=summary,
            )
        )

    def _log(self, message: str, level: str = "info") -> None:
        log_method = {"warn": logger.warning, "error": logger.error}.get(level, logger.info)
        log_method("%s", message)
        if self.emitter is not None:
            self.emitter.emit(LogEvent(message=message, level=level))


def format_annotations(annotations: list[dict]) -> Optional[str]:
    if not annotations:
        return None

    limited = annotations[:MAX_ANNOTATIONS]
    lines = []
    for annotation in limited:
        location = str(annotation.get("path", "unknown"))
        if annotation.get("start_line") is not None:
            location = f"{location}:{annotation['start_line']}"
        level = annotation.get("annotation_level") or "failure"
        raw_message = str(annotation.get("message", ""))
        message = _single_line(truncate_log(raw_message, MAX_ANNOTATION_CHARS))
        details = []
        if annotation.get("title"):
            details.append(_single_line(annotation["title"]))
        if annotation.get("raw_details"):
            raw_details = truncate_log(annotation["raw_details"], MAX_ANNOTATION_CHARS)
            details.append(_single_line(raw_details))
        suffix = f" ({' - '.join(details)})" if details else ""
        lines.append(f"- {location}: {level}: {message}{suffix}")

    if len(annotations) > len(limited):
        lines.append(f"... {len(annotations) - len(limited)} more annotations omitted")
    return "\n".join(lines)


__all__ = [
    "DEFAULT_POLL_INTERVAL_SECONDS",
    "GENERIC_BUILD_FAILURE",
    "GitHubChecker",
    "format_annotations",
    "truncate_log",
]
