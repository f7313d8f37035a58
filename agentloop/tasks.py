"""Task list side-state for the create_tasks / update_tasks tools."""

from dataclasses import dataclass, field

VALID_STATUSES = ("pending", "in_progress", "completed")


class TaskError(ValueError):
    """Raised when a task list operation is rejected."""


@dataclass
class Task:
    id: str
    description: str
    status: str = "pending"
    notes: str | None = None

    def to_dict(self) -> dict:
        d = {"id": self.id, "description": self.description, "status": self.status}
        if self.notes is not None:
            d["notes"] = self.notes
        return d


@dataclass
class TaskList:
    user_query: str
    tasks: list[Task] = field(default_factory=list)

    @classmethod
    def build(cls, user_query: str, raw_tasks: list) -> "TaskList":
        """Validate raw task dicts and build a list. Raises TaskError."""
        tasks: list[Task] = []
        for i, raw in enumerate(raw_tasks):
            if not isinstance(raw, dict) or not raw.get("id") or not raw.get("description"):
                raise TaskError(f"Task {i} missing required fields (id, description)")
            status = raw.get("status") or "pending"
            _check_status(status)
            tasks.append(
                Task(
                    id=str(raw["id"]),
                    description=str(raw["description"]),
                    status=status,
                    notes=raw.get("notes"),
                )
            )
        return cls(user_query=user_query, tasks=tasks)

    def get(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def apply_updates(self, updates: list) -> int:
        """Apply status/notes updates in order. Raises TaskError on the first bad one.

        Updates are validated up front so a rejected batch leaves the list untouched.
        """
        planned: list[tuple[Task, dict]] = []
        for i, upd in enumerate(updates):
            if not isinstance(upd, dict) or not upd.get("id") or not upd.get("status"):
                raise TaskError(f"Update {i} missing required fields (id, status)")
            _check_status(upd["status"])
            task = self.get(str(upd["id"]))
            if task is None:
                raise TaskError(f"Task '{upd['id']}' not found")
            planned.append((task, upd))

        for task, upd in planned:
            task.status = upd["status"]
            if upd.get("notes") is not None:
                task.notes = upd["notes"]
        return len(planned)

    def counts(self) -> dict[str, int]:
        out = {s: 0 for s in VALID_STATUSES}
        for task in self.tasks:
            out[task.status] += 1
        return out

    def to_dict(self) -> dict:
        return {
            "user_query": self.user_query,
            "tasks": [t.to_dict() for t in self.tasks],
        }

    def summary_line(self) -> str:
        c = self.counts()
        return (
            f"tasks: {c['completed']} completed, {c['in_progress']} in progress, "
            f"{c['pending']} pending"
        )


def _check_status(status) -> None:
    if status not in VALID_STATUSES:
        raise TaskError(
            f"Invalid status '{status}', expected one of: {', '.join(VALID_STATUSES)}"
        )
