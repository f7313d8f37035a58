"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.text import Text

_console = Console(stderr=True)
_stdout = Console()


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level consoles from CLI flags.

    Call once at startup, before any output.
    """
    global _console, _stdout
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(stderr=True, **kwargs)
    _stdout = Console(**kwargs)


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, params: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    if params:
        header.append(f"  {params}", style="dim")
    _console.print(header)


def tool_result(name: str, message: str) -> None:
    line = Text()
    line.append(f"  ✓ {name}", style="green")
    if message:
        line.append(f"  {message}", style="dim")
    _console.print(line)


def tool_error(name: str, msg: str) -> None:
    line = Text()
    line.append(f"  ✗ {name}", style="bold red")
    line.append(f"  {msg}", style="red")
    _console.print(line)


def tool_rejected(name: str) -> None:
    _console.print(Text(f"  ⊘ {name} rejected by user", style="yellow"))


def approval_request(name: str, params: str, dangerous: bool) -> None:
    line = Text()
    if dangerous:
        line.append("  ⚠ Dangerous: ", style="bold red")
    else:
        line.append("  ? Approve: ", style="bold yellow")
    line.append(name, style="bold")
    if params:
        line.append(f"  {params}", style="dim")
    _console.print(line)


def task_list(summary: str, tasks: list[dict]) -> None:
    marks = {"pending": " ", "in_progress": "~", "completed": "x"}
    _console.print(Text(f"  [tasks] {summary}", style="yellow"))
    for task in tasks:
        mark = marks.get(task["status"], "?")
        _console.print(
            Text(f"    [{mark}] {task['id']}. {task['description']}", style="dim")
        )


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


def reasoning(text: str) -> None:
    for row in text.splitlines():
        _console.print(Text(f"  │ {row}", style="dim italic"))


def answer(text: str) -> None:
    """Render the final answer as Markdown on stdout."""
    _stdout.print(Markdown(text))


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def usage(line: str) -> None:
    _console.print(Text(f"  {line}", style="dim cyan"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def system_note(msg: str) -> None:
    _console.print(Text.from_markup(f"  [bold yellow]●[/] {escape(msg)}"))


def repl_banner(model: str, auto_approve: bool) -> None:
    mode = "auto-approve on" if auto_approve else "approvals on"
    _console.print(
        Text(
            f"agentloop ({model}, {mode}). Type /help for commands, /exit or Ctrl-D to quit.",
            style="dim",
        )
    )
