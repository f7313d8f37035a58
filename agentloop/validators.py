"""Safety policy for tool calls: classification, read-before-edit, containment."""

from pathlib import Path

SAFE = "safe"
NEEDS_APPROVAL = "needsApproval"
DANGEROUS = "dangerous"

SAFE_TOOLS = [
    "read_file",
    "list_files",
    "search_files",
    "create_tasks",
    "update_tasks",
]

APPROVAL_REQUIRED_TOOLS = [
    "create_file",
    "edit_file",
]

DANGEROUS_TOOLS = [
    "delete_file",
    "execute_command",
]


def classify(tool_name: str) -> str:
    """Return the approval class of a tool.

    Names outside the three lists are treated as dangerous so that nothing
    unrecognised ever runs without a human decision.
    """
    if tool_name in SAFE_TOOLS:
        return SAFE
    if tool_name in APPROVAL_REQUIRED_TOOLS:
        return NEEDS_APPROVAL
    return DANGEROUS


def requires_approval(tool_name: str, auto_approve: bool) -> bool:
    """Dangerous tools always ask; approval-required tools ask unless auto-approve is on."""
    cls = classify(tool_name)
    if cls == DANGEROUS:
        return True
    if cls == NEEDS_APPROVAL:
        return not auto_approve
    return False


def normalize_path(file_path: str, root: str | Path = ".") -> str:
    """Resolve file_path against root into the canonical key used by the tracker."""
    p = Path(file_path).expanduser()
    if not p.is_absolute():
        p = Path(root) / p
    return str(p.resolve())


class ReadTracker:
    """Set of files read during one agent session."""

    def __init__(self, root: str | Path = "."):
        self.root = Path(root).resolve()
        self._read: set[str] = set()

    def record_read(self, file_path: str) -> None:
        self._read.add(normalize_path(file_path, self.root))

    def has_read(self, file_path: str) -> bool:
        return normalize_path(file_path, self.root) in self._read

    def reset(self) -> None:
        self._read.clear()

    def __len__(self) -> int:
        return len(self._read)

    def __contains__(self, file_path: str) -> bool:
        return self.has_read(file_path)


def validate_read_before_edit(file_path: str, tracker: ReadTracker | None) -> bool:
    """True when the file may be edited. A missing tracker disables the guard."""
    if tracker is None:
        return True
    return tracker.has_read(file_path)


def read_before_edit_error(file_path: str) -> str:
    return f"File must be read before editing. Use read_file tool first: {file_path}"


def resolve_in_project(file_path: str, root: str | Path) -> Path:
    """Resolve a path (relative paths against root), following symlinks."""
    p = Path(file_path).expanduser()
    if not p.is_absolute():
        p = Path(root) / p
    return p.resolve()


def is_within_project(file_path: str, root: str | Path) -> bool:
    """True if file_path resolves to root itself or somewhere beneath it."""
    base = Path(root).resolve()
    try:
        resolved = resolve_in_project(file_path, base)
    except (OSError, ValueError):
        return False
    return resolved == base or resolved.is_relative_to(base)
