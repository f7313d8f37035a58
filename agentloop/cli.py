"""Command-line entry point: one-shot questions and the interactive REPL."""

import argparse
import os
import sys
from importlib import metadata
from pathlib import Path

from . import fmt
from .agent import DEFAULT_MODEL, Agent, AgentState
from .config import (
    _UNSET,
    PROVIDERS,
    apply_config_to_args,
    generate_config,
    load_config,
    resolve_api_key,
)
from .report import AgentError
from .session import (
    ATTENTION_APPROVAL,
    ATTENTION_DONE,
    ATTENTION_MAX_ITERATIONS,
    ChatMessage,
    ChatSession,
)
from .tools import format_tool_params
from .validators import DANGEROUS, classify


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="agentloop",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A terminal coding assistant that reads, edits and runs code with your approval.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="Model provider: groq (default), openrouter, or lmstudio (local).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help=f"Model identifier (default: {DEFAULT_MODEL}).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var and config).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Override the provider endpoint (default: http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: 1.0).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="Replace the built-in system prompt.",
    )
    parser.add_argument(
        "--project-root",
        type=str,
        default=".",
        help="Project directory the tools operate in (default: current directory).",
    )
    parser.add_argument(
        "--auto-approve",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Skip approval for create_file and edit_file. delete_file and "
        "execute_command always ask.",
    )
    parser.add_argument(
        "--debug",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Write a debug log to debug-agent.log in the project root.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Suppress diagnostics; only print the final answer.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON usage report to FILE. Incompatible with --repl.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project-level template.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("agentloop")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    try:
        _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)


def _run_main(args):
    project_root = Path(args.project_root).resolve()
    if not project_root.is_dir():
        raise AgentError(f"project root is not a directory: {args.project_root}")

    config = load_config(project_root)
    # The config api_key is the last resort, behind the environment.
    config_api_key = config.pop("api_key", None)
    explicit_key = None if args.api_key is _UNSET else args.api_key
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    fmt.init(color=args.color, no_color=args.no_color)

    api_key = resolve_api_key(args.provider, explicit_key, {"api_key": config_api_key})
    agent = Agent(
        args.model or DEFAULT_MODEL,
        api_key=api_key,
        provider=args.provider,
        base_url=args.base_url,
        temperature=args.temperature,
        system_message=args.system_prompt,
        project_root=project_root,
        debug=args.debug,
    )
    agent.set_session_auto_approve(args.auto_approve)

    session = ChatSession(
        agent,
        on_message=lambda msg: _render_message(msg, session, agent, args.verbose),
    )
    session.session_auto_approve = args.auto_approve

    if args.repl:
        repl_loop(session, agent, project_root, verbose=args.verbose, first=args.question)
        return

    state = _run_question(session, args.question)
    if args.verbose:
        summary = agent.usage.summary_line()
        if summary:
            fmt.usage(summary)
    if args.report:
        report = agent.usage.build_report(
            model=agent.get_current_model(),
            provider=agent.provider,
            outcome=state.value if state else "error",
        )
        try:
            agent.usage.write(args.report, report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
        else:
            if args.verbose:
                fmt.info(f"Report written to {args.report}")
    if state is not AgentState.COMPLETE:
        sys.exit(1)


# -- Rendering ---------------------------------------------------------------


def _render_message(msg: ChatMessage, session: ChatSession, agent: Agent, verbose: bool):
    """Print a session message as it is added or updated."""
    if msg.role == "assistant":
        if msg.reasoning and session.show_reasoning and verbose:
            fmt.reasoning(msg.reasoning)
        if msg.final:
            fmt.answer(msg.content)
        elif verbose:
            fmt.assistant_text(msg.content)
        return

    if msg.role == "system":
        fmt.system_note(msg.content)
        return

    te = msg.tool_execution
    if te is None or not verbose:
        return
    if te.status == "pending":
        fmt.tool_call(te.name, format_tool_params(te.name, te.args, include_prefix=False))
    elif te.status == "completed":
        fmt.tool_result(te.name, te.result.message if te.result else "")
        if te.name in ("create_tasks", "update_tasks") and agent.task_list is not None:
            tl = agent.task_list
            fmt.task_list(tl.summary_line(), [t.to_dict() for t in tl.tasks])
    elif te.status == "failed":
        fmt.tool_error(te.name, te.result.error if te.result else msg.content)
    elif te.status == "canceled":
        fmt.tool_rejected(te.name)


# -- Questions from the agent -------------------------------------------------


def _ask(question: str) -> str:
    """Read one answer from the terminal. Empty string on EOF or non-TTY stdin."""
    if not sys.stdin.isatty():
        return ""
    from prompt_toolkit import prompt
    from prompt_toolkit.formatted_text import FormattedText

    try:
        return prompt(FormattedText([("bold fg:ansiyellow", question)])).strip().lower()
    except EOFError:
        return ""


def _answer_approval(session: ChatSession) -> None:
    pending = session.pending_approval
    if pending is None:
        return
    name = pending.tool_name
    dangerous = classify(name) == DANGEROUS
    fmt.approval_request(name, format_tool_params(name, pending.tool_args), dangerous)
    if dangerous:
        answer = _ask("  Allow? [y]es / [n]o: ")
    else:
        answer = _ask("  Allow? [y]es / [a]lways this session / [n]o: ")
    if answer in ("a", "always") and not dangerous:
        session.approve_tool_execution(True, auto_approve_session=True)
        fmt.info("auto-approve enabled for file changes this session")
    elif answer in ("y", "yes"):
        session.approve_tool_execution(True)
    else:
        session.approve_tool_execution(False)


def _answer_max_iterations(session: ChatSession) -> None:
    pending = session.pending_max_iterations
    if pending is None:
        return
    fmt.warning(f"reached {pending.max_iterations} tool iterations")
    answer = _ask("  Keep going? [y]es / [n]o: ")
    session.respond_to_max_iterations(answer in ("y", "yes"))


def _run_question(session: ChatSession, question: str) -> AgentState | None:
    """Run a question on a worker thread, answering its prompts on this one.

    Ctrl-C interrupts the request instead of exiting.
    """
    if session.start_message(question) is None:
        fmt.warning("a request is already running")
        return None
    while True:
        try:
            attention = session.wait_for_attention()
            if attention == ATTENTION_APPROVAL:
                _answer_approval(session)
            elif attention == ATTENTION_MAX_ITERATIONS:
                _answer_max_iterations(session)
            elif attention == ATTENTION_DONE:
                return session.last_state
        except KeyboardInterrupt:
            session.interrupt_request()


# -- REPL ----------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset the conversation and the read-file tracker\n"
        "  /auto              Toggle auto-approve for create_file / edit_file\n"
        "  /reasoning         Toggle display of model reasoning\n"
        "  /model [id]        Show or switch the model\n"
        "  /stats             Show token usage and tool counts\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_stats(agent: Agent) -> None:
    summary = agent.usage.summary_line() or "usage: no API calls yet"
    fmt.info(summary)
    fmt.info(f"context: ~{agent.estimate_context_tokens()} tokens")
    if agent.task_list is not None:
        fmt.info(agent.task_list.summary_line())


def repl_loop(
    session: ChatSession,
    agent: Agent,
    project_root: Path,
    *,
    verbose: bool,
    first: str | None = None,
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(project_root, ".agentloop", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "agentloop> ")])

    if verbose:
        fmt.repl_banner(agent.get_current_model(), session.session_auto_approve)

    pending_line = first
    while True:
        if pending_line is not None:
            line, pending_line = pending_line, None
        else:
            try:
                print(file=sys.stderr)  # blank line before prompt
                line = prompt_session.prompt(prompt_text)
            except (EOFError, KeyboardInterrupt):
                print(file=sys.stderr)
                break

        line = line.strip()
        if not line:
            continue

        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1].strip() if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            session.clear_history()
            fmt.info("conversation cleared")
            continue
        elif cmd == "/auto":
            enabled = session.toggle_auto_approve()
            fmt.info(f"auto-approve {'on' if enabled else 'off'}")
            continue
        elif cmd == "/reasoning":
            shown = session.toggle_reasoning()
            fmt.info(f"reasoning display {'on' if shown else 'off'}")
            continue
        elif cmd == "/model":
            if cmd_arg:
                agent.set_model(cmd_arg)
                fmt.info(f"model set to {cmd_arg}")
            else:
                fmt.info(f"current model: {agent.get_current_model()}")
            continue
        elif cmd == "/stats":
            _repl_stats(agent)
            continue

        try:
            _run_question(session, line)
        except AgentError as e:
            fmt.error(str(e))
