"""Turn a review agent's free-form output into a structured verdict."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from stepcat.logging import get_logger

logger = get_logger(__name__)

PASS = "PASS"
FAIL = "FAIL"
RAW_SNIPPET_LIMIT = 500

_FENCED_BLOCK = re.compile(r"```(?:jsonc?)?[ \t]*\r?\n?(.*?)```", re.IGNORECASE | re.DOTALL)
_SEVERITIES = ("error", "warning")


@dataclass
class ReviewIssue:
    file: str
    description: str
    severity: str = "error"
    line: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"file": self.file}
        if self.line is not None:
            payload["line"] = self.line
        payload["severity"] = self.severity
        payload["description"] = self.description
        return payload


@dataclass
class ReviewResult:
    result: str
    issues: list[ReviewIssue] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.result == PASS

    def to_dict(self) -> dict[str, Any]:
        return {"result": self.result, "issues": [issue.to_dict() for issue in self.issues]}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ReviewResult":
        return cls(
            result=payload["result"],
            issues=[
                ReviewIssue(
                    file=item["file"],
                    description=item["description"],
                    severity=item.get("severity") or "error",
                    line=item.get("line"),
                )
                for item in payload.get("issues", [])
            ],
        )


class _InvalidReview(ValueError):
    """JSON was found but does not have the review shape."""


class ReviewParser:
    """Parses review output; never raises on malformed input."""

    def parse(self, raw_output: Optional[str]) -> ReviewResult:
        raw = raw_output or ""
        text = raw.strip()

        for candidate in self._candidates(text):
            try:
                return self._parse_candidate(candidate)
            except _InvalidReview as exc:
                logger.warning("Review output is not a valid verdict: %s", exc)
                return self._diagnostic(str(exc), raw)
            except (ValueError, RecursionError):
                # JSONDecodeError is a ValueError; very deep nesting overflows the decoder.
                continue

        logger.warning(
            "Failed to parse review output as JSON. Raw output (first 200 chars): %s",
            raw[:200],
        )
        return self._diagnostic("Failed to parse review output as JSON.", raw)

    def _candidates(self, text: str):
        yield text
        fenced = _FENCED_BLOCK.search(text)
        if fenced:
            yield fenced.group(1).strip()
        braced = extract_json_object(text)
        if braced is not None:
            yield braced

    def _parse_candidate(self, candidate: str) -> ReviewResult:
        return self._validate(json.loads(candidate))

    @staticmethod
    def _validate(parsed: Any) -> ReviewResult:
        if not isinstance(parsed, dict):
            raise _InvalidReview("Parsed JSON is not an object")

        result = parsed.get("result")
        if result not in (PASS, FAIL):
            raise _InvalidReview('Invalid or missing "result" field (must be PASS or FAIL)')

        raw_issues = parsed.get("issues")
        if not isinstance(raw_issues, list):
            raise _InvalidReview('Invalid or missing "issues" field (must be an array)')

        issues: list[ReviewIssue] = []
        for index, item in enumerate(raw_issues):
            if not isinstance(item, dict):
                raise _InvalidReview(f"Issue at index {index} is not an object")
            file_path = item.get("file")
            if not isinstance(file_path, str) or not file_path.strip():
                raise _InvalidReview(f'Issue at index {index} missing "file" field')
            description = item.get("description")
            if not isinstance(description, str) or not description.strip():
                raise _InvalidReview(f'Issue at index {index} missing "description" field')
            severity = item.get("severity")
            if severity is None:
                severity = "error"
            elif severity not in _SEVERITIES:
                raise _InvalidReview(
                    f'Issue at index {index} has invalid "severity" (must be error or warning)'
                )
            line = item.get("line")
            if isinstance(line, bool) or not isinstance(line, int):
                line = None
            issues.append(
                ReviewIssue(file=file_path, description=description, severity=severity, line=line)
            )

        return ReviewResult(result=result, issues=issues)

    @staticmethod
    def _diagnostic(reason: str, raw: str) -> ReviewResult:
        description = f"{reason}\n\nRaw output:\n{raw[:RAW_SNIPPET_LIMIT]}"
        return ReviewResult(
            result=FAIL,
            issues=[ReviewIssue(file="unknown", description=description, severity="error")],
        )


def extract_json_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` substring of ``text``, if any."""

    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False
    for index in range(start, len(text)):
        char = text[index]
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


__all__ = [
    "FAIL",
    "PASS",
    "ReviewIssue",
    "ReviewParser",
    "ReviewResult",
    "extract_json_object",
]
