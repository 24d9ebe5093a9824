"""SQLite-backed storage for stepcat executions."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Optional

from stepcat.errors import ExecutionNotFoundError
from stepcat.logging import get_logger
from stepcat.models import (
    BuildStatus,
    ExecutionState,
    Issue,
    IssueStatus,
    IssueType,
    Iteration,
    IterationStatus,
    IterationType,
    Plan,
    ReviewStatus,
    Severity,
    Step,
    StepStatus,
    utc_now,
)

DEFAULT_DB_DIRNAME = ".stepcat"
DEFAULT_DB_FILENAME = "executions.db"

logger = get_logger(__name__)

_MIGRATIONS: list[tuple[int, str, str]] = [
    (
        1,
        "initial_schema",
        """
        CREATE TABLE IF NOT EXISTS plans (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            plan_file_path TEXT NOT NULL,
            work_dir TEXT NOT NULL,
            owner TEXT NOT NULL,
            repo TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS steps (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            plan_id INTEGER NOT NULL REFERENCES plans(id) ON DELETE CASCADE,
            step_number INTEGER NOT NULL,
            title TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (plan_id, step_number)
        );

        CREATE TABLE IF NOT EXISTS iterations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            step_id INTEGER NOT NULL REFERENCES steps(id) ON DELETE CASCADE,
            iteration_number INTEGER NOT NULL,
            type TEXT NOT NULL,
            commit_sha TEXT,
            implementation_log TEXT,
            review_log TEXT,
            build_status TEXT,
            review_status TEXT,
            status TEXT NOT NULL DEFAULT 'in_progress',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (step_id, iteration_number)
        );

        CREATE TABLE IF NOT EXISTS issues (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            iteration_id INTEGER NOT NULL REFERENCES iterations(id) ON DELETE CASCADE,
            type TEXT NOT NULL,
            description TEXT NOT NULL,
            file_path TEXT,
            line_number INTEGER,
            severity TEXT,
            status TEXT NOT NULL DEFAULT 'open',
            created_at TEXT NOT NULL,
            resolved_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_steps_plan ON steps(plan_id);
        CREATE INDEX IF NOT EXISTS idx_iterations_step ON iterations(step_id);
        CREATE INDEX IF NOT EXISTS idx_issues_iteration ON issues(iteration_id);
        CREATE INDEX IF NOT EXISTS idx_issues_status ON issues(status);
        """,
    ),
    (
        2,
        "iteration_agents",
        """
        ALTER TABLE iterations ADD COLUMN implementation_agent TEXT NOT NULL DEFAULT 'claude';
        ALTER TABLE iterations ADD COLUMN review_agent TEXT;
        """,
    ),
]

_ITERATION_COLUMNS = {
    "commit_sha",
    "status",
    "build_status",
    "review_status",
    "implementation_log",
    "review_log",
    "review_agent",
}


def default_db_path(work_dir: Path | str) -> Path:
    return Path(work_dir) / DEFAULT_DB_DIRNAME / DEFAULT_DB_FILENAME


def _enum_or_none(enum_cls, value: Optional[str]):
    return enum_cls(value) if value is not None else None


class Database:
    """File-backed :class:`~stepcat.storage.Storage` implementation.

    The database runs in WAL mode so a second process (for example
    ``stepcat status``) can read while an execution is writing.
    """

    def __init__(
        self,
        work_dir: Optional[Path | str] = None,
        *,
        db_path: Optional[Path | str] = None,
    ) -> None:
        if db_path is None:
            if work_dir is None:
                raise ValueError("Database requires either work_dir or db_path.")
            db_path = default_db_path(work_dir)
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = self._open_connection()
        self._run_migrations()

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path), timeout=30)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA journal_mode = WAL")
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database connection is closed.")
        return self._conn

    def _run_migrations(self) -> None:
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at TEXT NOT NULL
                )
                """
            )
        applied = {
            row["version"]
            for row in self.conn.execute("SELECT version FROM schema_migrations")
        }
        for version, name, script in _MIGRATIONS:
            if version in applied:
                continue
            logger.debug("Applying database migration %s (%s)", version, name)
            # executescript commits any pending transaction before running.
            self.conn.executescript(script)
            with self.conn:
                self.conn.execute(
                    "INSERT INTO schema_migrations (version, name, applied_at) VALUES (?, ?, ?)",
                    (version, name, utc_now()),
                )

    # Row mappers -----------------------------------------------------------

    @staticmethod
    def _plan_from_row(row: sqlite3.Row) -> Plan:
        return Plan(
            id=row["id"],
            plan_file_path=row["plan_file_path"],
            work_dir=row["work_dir"],
            owner=row["owner"],
            repo=row["repo"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _step_from_row(row: sqlite3.Row) -> Step:
        return Step(
            id=row["id"],
            plan_id=row["plan_id"],
            step_number=row["step_number"],
            title=row["title"],
            status=StepStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _iteration_from_row(row: sqlite3.Row) -> Iteration:
        return Iteration(
            id=row["id"],
            step_id=row["step_id"],
            iteration_number=row["iteration_number"],
            type=IterationType(row["type"]),
            status=IterationStatus(row["status"]),
            commit_sha=row["commit_sha"],
            build_status=_enum_or_none(BuildStatus, row["build_status"]),
            review_status=_enum_or_none(ReviewStatus, row["review_status"]),
            implementation_agent=row["implementation_agent"],
            review_agent=row["review_agent"],
            implementation_log=row["implementation_log"],
            review_log=row["review_log"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _issue_from_row(row: sqlite3.Row) -> Issue:
        return Issue(
            id=row["id"],
            iteration_id=row["iteration_id"],
            type=IssueType(row["type"]),
            description=row["description"],
            file_path=row["file_path"],
            line_number=row["line_number"],
            severity=_enum_or_none(Severity, row["severity"]),
            status=IssueStatus(row["status"]),
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
        )

    # Plans -----------------------------------------------------------------

    def create_plan(self, plan_file_path: str, work_dir: str, owner: str, repo: str) -> Plan:
        created_at = utc_now()
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO plans (plan_file_path, work_dir, owner, repo, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (str(plan_file_path), str(work_dir), owner, repo, created_at),
            )
        return Plan(
            id=int(cursor.lastrowid),
            plan_file_path=str(plan_file_path),
            work_dir=str(work_dir),
            owner=owner,
            repo=repo,
            created_at=created_at,
        )

    def get_plan(self, plan_id: int) -> Optional[Plan]:
        row = self.conn.execute("SELECT * FROM plans WHERE id = ?", (plan_id,)).fetchone()
        return self._plan_from_row(row) if row else None

    def get_all_plans(self) -> list[Plan]:
        rows = self.conn.execute("SELECT * FROM plans ORDER BY id DESC").fetchall()
        return [self._plan_from_row(row) for row in rows]

    # Steps -----------------------------------------------------------------

    def create_step(self, plan_id: int, step_number: int, title: str) -> Step:
        now = utc_now()
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO steps (plan_id, step_number, title, status, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (plan_id, step_number, title, StepStatus.PENDING.value, now, now),
            )
        return Step(
            id=int(cursor.lastrowid),
            plan_id=plan_id,
            step_number=step_number,
            title=title,
            status=StepStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

    def get_steps(self, plan_id: int) -> list[Step]:
        rows = self.conn.execute(
            "SELECT * FROM steps WHERE plan_id = ? ORDER BY step_number ASC", (plan_id,)
        ).fetchall()
        return [self._step_from_row(row) for row in rows]

    def update_step_status(self, step_id: int, status: StepStatus) -> None:
        with self.conn:
            self.conn.execute(
                "UPDATE steps SET status = ?, updated_at = ? WHERE id = ?",
                (StepStatus(status).value, utc_now(), step_id),
            )

    def replace_pending_steps(
        self, plan_id: int, start_step_number: int, steps: list[tuple[int, str]]
    ) -> tuple[int, int]:
        """Make the untouched tail of a plan match ``steps``.

        Pending steps numbered ``start_step_number`` or later that have no
        iterations are deleted unless ``steps`` still lists them with the same
        title; entries of ``steps`` whose number is free are created. Returns
        ``(deleted, created)``.
        """

        wanted = {number: title for number, title in steps if number >= start_step_number}
        now = utc_now()
        deleted = created = 0
        with self.conn:
            rows = self.conn.execute(
                "SELECT s.*, (SELECT COUNT(*) FROM iterations it WHERE it.step_id = s.id) "
                "AS iteration_count FROM steps s WHERE s.plan_id = ? AND s.step_number >= ?",
                (plan_id, start_step_number),
            ).fetchall()
            taken = set()
            for row in rows:
                replaceable = (
                    row["status"] == StepStatus.PENDING.value and not row["iteration_count"]
                )
                if replaceable and wanted.get(row["step_number"]) != row["title"]:
                    self.conn.execute("DELETE FROM steps WHERE id = ?", (row["id"],))
                    deleted += 1
                else:
                    taken.add(row["step_number"])
            for number in sorted(wanted):
                if number in taken:
                    continue
                self.conn.execute(
                    "INSERT INTO steps (plan_id, step_number, title, status, created_at, "
                    "updated_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (plan_id, number, wanted[number], StepStatus.PENDING.value, now, now),
                )
                created += 1
        return deleted, created

    # Iterations ------------------------------------------------------------

    def create_iteration(
        self,
        step_id: int,
        iteration_number: int,
        iteration_type: IterationType,
        implementation_agent: str,
        review_agent: Optional[str] = None,
    ) -> Iteration:
        now = utc_now()
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO iterations (step_id, iteration_number, type, status, "
                "implementation_agent, review_agent, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    step_id,
                    iteration_number,
                    IterationType(iteration_type).value,
                    IterationStatus.IN_PROGRESS.value,
                    implementation_agent,
                    review_agent,
                    now,
                    now,
                ),
            )
        return Iteration(
            id=int(cursor.lastrowid),
            step_id=step_id,
            iteration_number=iteration_number,
            type=IterationType(iteration_type),
            status=IterationStatus.IN_PROGRESS,
            implementation_agent=implementation_agent,
            review_agent=review_agent,
            created_at=now,
            updated_at=now,
        )

    def get_iteration(self, iteration_id: int) -> Optional[Iteration]:
        row = self.conn.execute(
            "SELECT * FROM iterations WHERE id = ?", (iteration_id,)
        ).fetchone()
        return self._iteration_from_row(row) if row else None

    def get_iterations(self, step_id: int) -> list[Iteration]:
        rows = self.conn.execute(
            "SELECT * FROM iterations WHERE step_id = ? ORDER BY iteration_number ASC",
            (step_id,),
        ).fetchall()
        return [self._iteration_from_row(row) for row in rows]

    def get_iterations_for_plan(self, plan_id: int) -> list[Iteration]:
        rows = self.conn.execute(
            "SELECT i.* FROM iterations i JOIN steps s ON s.id = i.step_id "
            "WHERE s.plan_id = ? ORDER BY s.step_number ASC, i.iteration_number ASC",
            (plan_id,),
        ).fetchall()
        return [self._iteration_from_row(row) for row in rows]

    def update_iteration(self, iteration_id: int, **changes: Any) -> Iteration:
        unknown = set(changes) - _ITERATION_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update iteration fields: {', '.join(sorted(unknown))}")

        assignments: list[str] = []
        values: list[Any] = []
        for column, value in changes.items():
            assignments.append(f"{column} = ?")
            values.append(value.value if hasattr(value, "value") else value)

        if assignments:
            assignments.append("updated_at = ?")
            values.append(utc_now())
            values.append(iteration_id)
            with self.conn:
                self.conn.execute(
                    f"UPDATE iterations SET {', '.join(assignments)} WHERE id = ?",
                    values,
                )

        iteration = self.get_iteration(iteration_id)
        if iteration is None:
            raise KeyError(f"Iteration {iteration_id} not found")
        return iteration

    # Issues ----------------------------------------------------------------

    def create_issue(
        self,
        iteration_id: int,
        issue_type: IssueType,
        description: str,
        file_path: Optional[str] = None,
        line_number: Optional[int] = None,
        severity: Optional[Severity] = None,
        status: IssueStatus = IssueStatus.OPEN,
    ) -> Issue:
        now = utc_now()
        severity_value = Severity(severity) if severity is not None else None
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO issues (iteration_id, type, description, file_path, line_number, "
                "severity, status, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    iteration_id,
                    IssueType(issue_type).value,
                    description,
                    file_path,
                    line_number,
                    severity_value.value if severity_value else None,
                    IssueStatus(status).value,
                    now,
                ),
            )
        return Issue(
            id=int(cursor.lastrowid),
            iteration_id=iteration_id,
            type=IssueType(issue_type),
            description=description,
            file_path=file_path,
            line_number=line_number,
            severity=severity_value,
            status=IssueStatus(status),
            created_at=now,
        )

    def get_issues(self, iteration_id: int) -> list[Issue]:
        rows = self.conn.execute(
            "SELECT * FROM issues WHERE iteration_id = ? ORDER BY id ASC", (iteration_id,)
        ).fetchall()
        return [self._issue_from_row(row) for row in rows]

    def get_issues_for_step_by_type(self, step_id: int, issue_type: IssueType) -> list[Issue]:
        rows = self.conn.execute(
            "SELECT iss.* FROM issues iss JOIN iterations it ON it.id = iss.iteration_id "
            "WHERE it.step_id = ? AND iss.type = ? "
            "ORDER BY it.iteration_number DESC, iss.id ASC",
            (step_id, IssueType(issue_type).value),
        ).fetchall()
        return [self._issue_from_row(row) for row in rows]

    def update_issue_status(self, issue_id: int, status: IssueStatus) -> None:
        status = IssueStatus(status)
        resolved_at = utc_now() if status is IssueStatus.FIXED else None
        with self.conn:
            self.conn.execute(
                "UPDATE issues SET status = ?, resolved_at = ? WHERE id = ?",
                (status.value, resolved_at, issue_id),
            )

    def get_open_issues(self, step_id: int) -> list[Issue]:
        rows = self.conn.execute(
            "SELECT iss.* FROM issues iss JOIN iterations it ON it.id = iss.iteration_id "
            "WHERE it.step_id = ? AND iss.status = ? ORDER BY iss.id ASC",
            (step_id, IssueStatus.OPEN.value),
        ).fetchall()
        return [self._issue_from_row(row) for row in rows]

    def get_execution_state(self, plan_id: int) -> ExecutionState:
        plan = self.get_plan(plan_id)
        if plan is None:
            raise ExecutionNotFoundError(plan_id)
        steps = self.get_steps(plan_id)
        iterations: dict[int, list[Iteration]] = {}
        issues: dict[int, list[Issue]] = {}
        for step in steps:
            step_iterations = self.get_iterations(step.id)
            iterations[step.id] = step_iterations
            for iteration in step_iterations:
                issues[iteration.id] = self.get_issues(iteration.id)
        return ExecutionState(plan=plan, steps=steps, iterations=iterations, issues=issues)


__all__ = ["DEFAULT_DB_DIRNAME", "DEFAULT_DB_FILENAME", "Database", "default_db_path"]
