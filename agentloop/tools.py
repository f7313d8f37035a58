"""Tool definitions and implementations for the coding agent."""

import fnmatch
import json
import logging
import os
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .edit import replace
from .tasks import TaskError, TaskList
from .validators import (
    ReadTracker,
    is_within_project,
    read_before_edit_error,
    resolve_in_project,
    validate_read_before_edit,
)

logger = logging.getLogger(__name__)

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": (
                "Read the contents of a file. Optionally read only an inclusive line range. "
                "A file must be read with this tool before it can be edited."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path to the file, relative to the project root.",
                    },
                    "start_line": {
                        "type": "integer",
                        "description": "1-based first line to read (inclusive).",
                        "minimum": 1,
                    },
                    "end_line": {
                        "type": "integer",
                        "description": "1-based last line to read (inclusive).",
                        "minimum": 1,
                    },
                },
                "required": ["file_path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "create_file",
            "description": (
                "Create a new file with the given content, or a directory when "
                "file_type is 'directory'. Parent directories are created as needed. "
                "Fails if the target exists unless overwrite is true."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path of the file or directory to create.",
                    },
                    "content": {
                        "type": "string",
                        "description": "Content of the new file (ignored for directories).",
                    },
                    "file_type": {
                        "type": "string",
                        "enum": ["file", "directory"],
                        "description": "What to create. Defaults to 'file'.",
                        "default": "file",
                    },
                    "overwrite": {
                        "type": "boolean",
                        "description": "Replace an existing file.",
                        "default": False,
                    },
                },
                "required": ["file_path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "edit_file",
            "description": (
                "Replace old_text with new_text in an existing file. The file must have "
                "been read with read_file earlier in the session. Replaces the first "
                "occurrence unless replace_all is true."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path to the file to edit.",
                    },
                    "old_text": {
                        "type": "string",
                        "description": "The exact text to find.",
                    },
                    "new_text": {
                        "type": "string",
                        "description": "The replacement text.",
                    },
                    "replace_all": {
                        "type": "boolean",
                        "description": "Replace every occurrence.",
                        "default": False,
                    },
                },
                "required": ["file_path", "old_text", "new_text"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "delete_file",
            "description": (
                "Delete a file, or a directory and everything in it. Only paths inside "
                "the project directory can be deleted. Requires user approval."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path of the file or directory to delete.",
                    },
                },
                "required": ["file_path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_files",
            "description": (
                "Show the contents of a directory as a tree. Common build, cache and "
                "VCS directories are skipped."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "directory": {
                        "type": "string",
                        "description": 'Directory to list. Defaults to "." (project root).',
                        "default": ".",
                    },
                    "pattern": {
                        "type": "string",
                        "description": 'Glob applied to file names, e.g. "*.py". Defaults to "*".',
                        "default": "*",
                    },
                    "recursive": {
                        "type": "boolean",
                        "description": "Descend into subdirectories.",
                        "default": False,
                    },
                    "show_hidden": {
                        "type": "boolean",
                        "description": "Include dot-files.",
                        "default": False,
                    },
                },
                "required": [],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "search_files",
            "description": (
                "Search file contents. Returns matching lines grouped by file. "
                "mode is 'substring' (literal, default), 'regex', or 'exact' (whole word)."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": "Text or regular expression to search for.",
                    },
                    "file_types": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": 'File extensions to include, e.g. ["py", "ts"].',
                    },
                    "directory": {
                        "type": "string",
                        "description": 'Directory to search. Defaults to "." (project root).',
                        "default": ".",
                    },
                    "case_sensitive": {
                        "type": "boolean",
                        "description": "Match case. Defaults to false.",
                        "default": False,
                    },
                    "mode": {
                        "type": "string",
                        "enum": ["substring", "regex", "exact"],
                        "description": "How pattern is interpreted.",
                        "default": "substring",
                    },
                    "max_results": {
                        "type": "integer",
                        "description": "Maximum number of matching lines. Defaults to 100.",
                        "minimum": 1,
                        "default": 100,
                    },
                    "context_lines": {
                        "type": "integer",
                        "description": "Lines of context to include around each match.",
                        "minimum": 0,
                        "default": 0,
                    },
                },
                "required": ["pattern"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "execute_command",
            "description": (
                "Run a shell command in the project and return its stdout and stderr. "
                "SAFETY WARNING: commands run with your full user permissions and always "
                "require user approval. Avoid long-running or interactive commands."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": "The command line to run.",
                    },
                    "command_type": {
                        "type": "string",
                        "enum": ["bash", "python", "setup", "run"],
                        "description": (
                            "bash for shell commands, python for python invocations, "
                            "setup for installs, run for starting programs or tests."
                        ),
                    },
                    "working_directory": {
                        "type": "string",
                        "description": "Directory to run in. Defaults to the project root.",
                    },
                    "timeout": {
                        "type": "integer",
                        "description": "Seconds before the command is killed. No limit by default.",
                        "minimum": 1,
                    },
                },
                "required": ["command", "command_type"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "create_tasks",
            "description": (
                "Break a multi-step request into a task list. Replaces any existing list."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "user_query": {
                        "type": "string",
                        "description": "The request the tasks accomplish.",
                    },
                    "tasks": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "id": {"type": "string"},
                                "description": {"type": "string"},
                                "status": {
                                    "type": "string",
                                    "enum": ["pending", "in_progress", "completed"],
                                },
                            },
                            "required": ["id", "description"],
                        },
                        "description": "Ordered tasks, each with an id and description.",
                    },
                },
                "required": ["user_query", "tasks"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "update_tasks",
            "description": "Update the status (and optional notes) of tasks in the current list.",
            "parameters": {
                "type": "object",
                "properties": {
                    "task_updates": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "id": {"type": "string"},
                                "status": {
                                    "type": "string",
                                    "enum": ["pending", "in_progress", "completed"],
                                },
                                "notes": {"type": "string"},
                            },
                            "required": ["id", "status"],
                        },
                        "description": "Status changes to apply, in order.",
                    },
                },
                "required": ["task_updates"],
            },
        },
    },
]

TOOL_SCHEMAS = {t["function"]["name"]: t for t in TOOLS}

MAX_FILE_SIZE = 50 * 1024 * 1024  # 50 MB
MAX_COMMAND_OUTPUT = 100 * 1024  # per stream
MAX_LINE_LENGTH = 500
MAX_LIST_ENTRIES = 1000
BINARY_CHECK_BYTES = 8 * 1024
COMMAND_TYPES = ("bash", "python", "setup", "run")
SEARCH_MODES = ("substring", "regex", "exact")

IGNORE_PATTERNS = {
    "node_modules",
    ".git",
    "__pycache__",
    "venv",
    ".venv",
    "build",
    "dist",
    "target",
    ".idea",
    ".vscode",
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    "*.pyc",
    "*.log",
    "*.tmp",
    "*.swp",
    "*.o",
    ".pytest_cache",
}

ALLOWED_HIDDEN = {".env", ".gitignore", ".dockerignore", ".dockerfile"}


@dataclass(frozen=True)
class ToolResult:
    """Uniform result envelope returned by every tool."""

    success: bool
    content: Any = None
    message: str | None = None
    error: str | None = None
    user_rejected: bool = False

    def to_dict(self) -> dict:
        d: dict = {"success": self.success}
        if self.content is not None:
            d["content"] = self.content
        if self.message:
            d["message"] = self.message
        if self.error:
            d["error"] = self.error
        if self.user_rejected:
            d["userRejected"] = True
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def create_tool_response(
    success: bool, content: Any = None, message: str = "", error: str = ""
) -> ToolResult:
    return ToolResult(
        success=success,
        content=content,
        message=message or None,
        error=error or None,
    )


def _fail(error: str, message: str = "", content: Any = None) -> ToolResult:
    return create_tool_response(False, content, message, error)


@dataclass
class ToolContext:
    """Per-session state the executors need: project root, read tracker, task list."""

    root: str = "."
    tracker: ReadTracker | None = None
    task_list: TaskList | None = None
    on_spawn: Callable[[subprocess.Popen], None] | None = None


def should_ignore(path: str, show_hidden: bool = False) -> bool:
    """True if a file or directory name matches the ignore list or is a hidden file."""
    name = os.path.basename(str(path).rstrip("/\\")) or str(path)
    for pat in IGNORE_PATTERNS:
        if fnmatch.fnmatchcase(name, pat):
            return True
    if not show_hidden and name.startswith(".") and name not in ALLOWED_HIDDEN:
        return True
    return False


# ---------------------------------------------------------------------------
# File tools
# ---------------------------------------------------------------------------


def read_file(
    ctx: ToolContext,
    file_path: str,
    start_line: int | None = None,
    end_line: int | None = None,
) -> ToolResult:
    """Read a whole file or an inclusive 1-based line range."""
    path = resolve_in_project(file_path, ctx.root)

    if not path.exists():
        return _fail("Error: File not found")
    if not path.is_file():
        return _fail("Error: Path is not a file")
    if path.stat().st_size > MAX_FILE_SIZE:
        return _fail("Error: File too large (max 50MB)")

    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return _fail("Error: File not found")
    except OSError as exc:
        logger.debug("read_file %s failed: %s", path, exc)
        return _fail("Error: Failed to read file")

    lines = text.splitlines()

    if start_line is not None or end_line is not None:
        start = max(start_line or 1, 1)
        if start > len(lines):
            return _fail("Error: Start line exceeds file length")
        end = min(end_line or len(lines), len(lines))
        if end < start:
            return _fail("Error: End line is before start line")
        content = "\n".join(lines[start - 1 : end])
        message = f"Read lines {start}-{end} from {file_path}"
    else:
        content = text
        message = f"Read {len(lines)} lines from {file_path}"

    if ctx.tracker is not None:
        ctx.tracker.record_read(str(path))
    return create_tool_response(True, content, message)


def create_file(
    ctx: ToolContext,
    file_path: str,
    content: str = "",
    file_type: str = "file",
    overwrite: bool = False,
) -> ToolResult:
    """Create a file (or directory), refusing to clobber unless overwrite is set."""
    if file_type not in ("file", "directory"):
        return _fail("Error: Invalid file_type, must be 'file' or 'directory'")

    if not is_within_project(file_path, ctx.root):
        return _fail("Error: Cannot create files outside the project directory")
    path = resolve_in_project(file_path, ctx.root)

    if path.exists() and not overwrite:
        return _fail("Error: File already exists, use overwrite=true")

    try:
        if file_type == "directory":
            path.mkdir(parents=True, exist_ok=True)
            return create_tool_response(True, None, f"Directory created: {file_path}")
        if path.is_dir():
            return _fail("Error: Path is a directory")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content or "", encoding="utf-8")
    except OSError as exc:
        return _fail(f"Error: Failed to create file: {exc}")

    verb = "overwritten" if overwrite else "created"
    return create_tool_response(True, None, f"File {verb}: {file_path}")


def edit_file(
    ctx: ToolContext,
    file_path: str,
    old_text: str,
    new_text: str,
    replace_all: bool = False,
) -> ToolResult:
    """Replace text in a file that was read earlier in the session."""
    path = resolve_in_project(file_path, ctx.root)

    if not validate_read_before_edit(str(path), ctx.tracker):
        return _fail(read_before_edit_error(file_path))
    if not is_within_project(file_path, ctx.root):
        return _fail("Error: Cannot edit files outside the project directory")

    try:
        original = path.read_text(encoding="utf-8")
        updated, count = replace(original, old_text, new_text, replace_all=replace_all)
        path.write_text(updated, encoding="utf-8")
    except (OSError, UnicodeDecodeError, ValueError) as exc:
        return _fail(f"Error: Failed to edit file: {exc}")

    return create_tool_response(
        True, None, f"Replaced {count} occurrence(s) in {file_path}"
    )


def delete_file(ctx: ToolContext, file_path: str) -> ToolResult:
    """Delete a file or directory tree inside the project root.

    A symlink is removed itself; its target is left alone.
    """
    root = Path(ctx.root).resolve()
    raw = Path(file_path).expanduser()
    # abspath collapses ".." without following the final component.
    target = Path(os.path.abspath(raw if raw.is_absolute() else root / raw))
    checked = target.parent.resolve() / target.name

    if checked == root or target == root:
        return _fail("Error: Cannot delete the root project directory")
    if not checked.is_relative_to(root):
        return _fail("Error: Cannot delete files outside the project directory")
    if not (target.is_symlink() or target.exists()):
        return _fail("Error: Path not found")

    try:
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
            return create_tool_response(True, None, f"Deleted directory: {file_path}")
        target.unlink()
    except OSError as exc:
        return _fail(f"Error: Failed to delete: {exc}")
    return create_tool_response(True, None, f"Deleted file: {file_path}")


def _tree_lines(
    directory: Path,
    pattern: str,
    recursive: bool,
    show_hidden: bool,
    prefix: str,
    budget: list[int],
) -> list[str]:
    entries = [
        e
        for e in sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name))
        if not should_ignore(e.name, show_hidden)
        and (e.is_dir() or fnmatch.fnmatch(e.name, pattern))
    ]
    lines: list[str] = []
    for i, entry in enumerate(entries):
        if budget[0] <= 0:
            lines.append(f"{prefix}... (truncated)")
            break
        budget[0] -= 1
        last = i == len(entries) - 1
        connector = "└── " if last else "├── "
        is_dir = entry.is_dir()
        lines.append(f"{prefix}{connector}{entry.name}{'/' if is_dir else ''}")
        if is_dir and recursive:
            try:
                lines.extend(
                    _tree_lines(
                        entry,
                        pattern,
                        recursive,
                        show_hidden,
                        prefix + ("    " if last else "│   "),
                        budget,
                    )
                )
            except OSError:
                continue
    return lines


def list_files(
    ctx: ToolContext,
    directory: str = ".",
    pattern: str = "*",
    recursive: bool = False,
    show_hidden: bool = False,
) -> ToolResult:
    """Render a directory as a tree."""
    path = resolve_in_project(directory, ctx.root)

    if not path.exists():
        return _fail("Error: Directory not found")
    if not path.is_dir():
        return _fail("Error: Path is not a directory")

    budget = [MAX_LIST_ENTRIES]
    try:
        lines = _tree_lines(path, pattern or "*", recursive, show_hidden, "", budget)
    except OSError as exc:
        return _fail(f"Error: Failed to list directory: {exc}")

    count = MAX_LIST_ENTRIES - budget[0]
    body = "\n".join([f"{directory}/"] + lines) if lines else f"{directory}/ (empty)"
    return create_tool_response(True, body, f"Listed {count} entries in {directory}")


def _compile_search(pattern: str, mode: str, case_sensitive: bool) -> re.Pattern:
    flags = 0 if case_sensitive else re.IGNORECASE
    if mode == "regex":
        return re.compile(pattern, flags)
    if mode == "exact":
        return re.compile(rf"\b{re.escape(pattern)}\b", flags)
    return re.compile(re.escape(pattern), flags)


def _normalize_extensions(file_types) -> set[str] | None:
    if not file_types:
        return None
    if isinstance(file_types, str):
        file_types = [file_types]
    exts = set()
    for ft in file_types:
        ft = ft.strip().lstrip("*").lstrip(".")
        if not ft:
            return None  # "*" means every file
        exts.add(ft.lower())
    return exts


def search_files(
    ctx: ToolContext,
    pattern: str,
    file_types: list[str] | None = None,
    directory: str = ".",
    case_sensitive: bool = False,
    mode: str = "substring",
    max_results: int = 100,
    context_lines: int = 0,
) -> ToolResult:
    """Search file contents below a directory, grouped by file."""
    root = resolve_in_project(directory, ctx.root)

    if not root.exists():
        return _fail("Error: Directory not found")
    if not root.is_dir():
        return _fail("Error: Path is not a directory")
    if mode not in SEARCH_MODES:
        return _fail(f"Error: Invalid search mode, must be one of: {', '.join(SEARCH_MODES)}")

    try:
        regex = _compile_search(pattern, mode, case_sensitive)
    except re.error:
        return _fail("Error: Invalid regex pattern")

    extensions = _normalize_extensions(file_types)
    base = Path(ctx.root).resolve()
    results: list[dict] = []
    total = 0
    truncated = False

    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if not should_ignore(d))
        for filename in sorted(files):
            if should_ignore(filename):
                continue
            if extensions is not None:
                suffix = Path(filename).suffix.lstrip(".").lower()
                if suffix not in extensions:
                    continue
            filepath = Path(dirpath) / filename
            try:
                with open(filepath, "rb") as f:
                    if b"\x00" in f.read(BINARY_CHECK_BYTES):
                        continue
                text = filepath.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue

            matches = []
            lines = text.splitlines()
            for idx, line in enumerate(lines):
                if regex.search(line):
                    match = {"line": idx + 1, "content": line[:MAX_LINE_LENGTH]}
                    if context_lines > 0:
                        lo = max(idx - context_lines, 0)
                        match["before"] = [l[:MAX_LINE_LENGTH] for l in lines[lo:idx]]
                        match["after"] = [
                            l[:MAX_LINE_LENGTH] for l in lines[idx + 1 : idx + 1 + context_lines]
                        ]
                    matches.append(match)
                    total += 1
                    if total >= max_results:
                        truncated = True
                        break
            if matches:
                try:
                    rel = str(filepath.relative_to(base))
                except ValueError:
                    rel = str(filepath)
                results.append({"file": rel, "matches": matches})
            if truncated:
                break
        if truncated:
            break

    if not results:
        return create_tool_response(True, [], "No files found matching criteria")

    message = f"Found {total} matches in {len(results)} files"
    if truncated:
        message += f" (stopped at {max_results} matches)"
    return create_tool_response(True, results, message)


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix the child runs in its own session, so the whole group is signalled.
    On Windows taskkill /T /F takes down the tree.
    """
    if proc.poll() is not None:
        return
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


def _shell_argv(command: str) -> list[str]:
    if sys.platform == "win32":
        return ["cmd.exe", "/c", command]
    shell = shutil.which("bash") or "/bin/sh"
    return [shell, "-c", command]


def _clip(data: bytes) -> str:
    text = data[:MAX_COMMAND_OUTPUT].decode("utf-8", errors="replace")
    if len(data) > MAX_COMMAND_OUTPUT:
        text += f"\n[truncated at {MAX_COMMAND_OUTPUT // 1024}KB]"
    return text


def execute_command(
    ctx: ToolContext,
    command: str,
    command_type: str,
    working_directory: str | None = None,
    timeout: int | None = None,
) -> ToolResult:
    """Run a shell command, capturing stdout and stderr separately."""
    if command_type not in COMMAND_TYPES:
        return _fail("Error: Invalid command_type")

    cwd = resolve_in_project(working_directory or ".", ctx.root)
    if not cwd.is_dir():
        return _fail("Error: Working directory not found")

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=str(cwd),
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(_shell_argv(command), **popen_kwargs)
    except OSError as exc:
        return _fail(f"Error: Failed to start command: {exc}")

    if ctx.on_spawn is not None:
        ctx.on_spawn(proc)

    timed_out = False
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        kill_process_tree(proc)
        stdout, stderr = proc.communicate()

    output = f"stdout: {_clip(stdout or b'')}\nstderr: {_clip(stderr or b'')}"

    if timed_out:
        return _fail(f"Error: Command timed out after {timeout}s", content=output)
    if proc.returncode < 0:
        return _fail(
            f"Error: Command terminated by signal {-proc.returncode}", content=output
        )
    if proc.returncode != 0:
        return _fail(
            f"Error: Command failed with exit code {proc.returncode}", content=output
        )
    return create_tool_response(True, output, f"Command completed: {command_type}")


# ---------------------------------------------------------------------------
# Task list tools
# ---------------------------------------------------------------------------


def create_tasks(ctx: ToolContext, user_query: str, tasks: list) -> ToolResult:
    """Replace the session task list."""
    try:
        if not isinstance(tasks, list):
            raise TypeError("tasks must be a list")
        task_list = TaskList.build(user_query, tasks)
    except TaskError as exc:
        return _fail(f"Error: {exc}")
    except (TypeError, AttributeError) as exc:
        return _fail(f"Error: Failed to create tasks: {exc}")

    ctx.task_list = task_list
    return create_tool_response(
        True,
        task_list.to_dict(),
        f"Created task list with {len(task_list.tasks)} tasks for: {user_query}",
    )


def update_tasks(ctx: ToolContext, task_updates: list) -> ToolResult:
    """Apply status updates to the session task list."""
    if ctx.task_list is None:
        return _fail("Error: No task list exists, use create_tasks first")
    if not isinstance(task_updates, list):
        return _fail("Error: task_updates must be a list")
    try:
        n = ctx.task_list.apply_updates(task_updates)
    except TaskError as exc:
        return _fail(f"Error: {exc}")
    return create_tool_response(True, ctx.task_list.to_dict(), f"Updated {n} task(s)")


TOOL_REGISTRY: dict[str, Callable[..., ToolResult]] = {
    "read_file": read_file,
    "create_file": create_file,
    "edit_file": edit_file,
    "delete_file": delete_file,
    "list_files": list_files,
    "search_files": search_files,
    "execute_command": execute_command,
    "create_tasks": create_tasks,
    "update_tasks": update_tasks,
}


# ---------------------------------------------------------------------------
# Argument validation and dispatch
# ---------------------------------------------------------------------------

_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "boolean": bool,
    "array": list,
    "object": dict,
    "number": (int, float),
}


def validate_args(name: str, args) -> str | None:
    """Check args against the tool's declared schema. Returns a problem or None."""
    if not isinstance(args, dict):
        return "arguments must be a JSON object"
    schema = TOOL_SCHEMAS[name]["function"]["parameters"]
    props = schema.get("properties", {})
    for key in schema.get("required", []):
        if args.get(key) is None:
            return f"missing required argument {key!r}"
    for key, value in args.items():
        if key not in props:
            return f"unexpected argument {key!r}"
        if value is None:
            continue
        expected = _JSON_TYPES.get(props[key].get("type", ""))
        if expected is None:
            continue
        # bool is a subclass of int; reject it for integer fields.
        if isinstance(value, bool) and expected is not bool:
            return f"argument {key!r} must be {props[key]['type']}, got boolean"
        if not isinstance(value, expected):
            return (
                f"argument {key!r} must be {props[key]['type']}, "
                f"got {type(value).__name__}"
            )
    return None


def execute_tool(name: str, args: dict, ctx: ToolContext | None = None) -> ToolResult:
    """Route a tool call to its executor. Never raises."""
    func = TOOL_REGISTRY.get(name)
    if func is None:
        return _fail("Error: Unknown tool")
    if ctx is None:
        ctx = ToolContext(root=os.getcwd())

    if name in TOOL_SCHEMAS:
        problem = validate_args(name, args)
        if problem:
            return _fail("Error: Invalid tool arguments", message=problem)

    # null for an optional field means "use the default".
    args = {k: v for k, v in args.items() if v is not None}
    try:
        return func(ctx, **args)
    except TypeError as exc:
        logger.warning("tool %s rejected arguments: %s", name, exc)
        return _fail("Error: Invalid tool arguments", message=str(exc))
    except Exception:
        logger.exception("tool %s raised", name)
        return _fail("Error: Unexpected tool error")


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------

KEY_PARAMS: dict[str, list[str]] = {
    "read_file": ["file_path"],
    "create_file": ["file_path"],
    "edit_file": ["file_path"],
    "delete_file": ["file_path"],
    "list_files": ["directory"],
    "search_files": ["pattern"],
    "execute_command": ["command"],
}

MAX_PARAM_DISPLAY = 50


def format_tool_params(
    name: str,
    args: dict,
    *,
    separator: str = "=",
    include_prefix: bool = True,
) -> str:
    """Render a tool's key parameters for display, e.g. 'Parameters: file_path="x"'."""
    keys = KEY_PARAMS.get(name)
    if not keys:
        return ""
    parts = []
    for key in keys:
        if args.get(key) is None:
            continue
        value = str(args[key])
        if len(value) > MAX_PARAM_DISPLAY:
            value = value[:MAX_PARAM_DISPLAY] + "..."
        parts.append(f'{key}{separator}"{value}"')
    if not parts:
        return f"Arguments: {json.dumps(args)}"
    body = ", ".join(parts)
    return f"Parameters: {body}" if include_prefix else body
