"""Tool-calling orchestration loop.

One `Agent` owns one conversation. `chat()` runs the request cycle on the
caller's thread: provider call, tool dispatch with approval gating, and
re-submission until the model answers without tool calls, the iteration
ceiling is declined, an error ends the cycle, or `interrupt()` is called
from another thread.
"""

import enum
import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import tiktoken

from .config import resolve_api_key, api_key_env_var
from .report import AgentError, ConfigError, ProviderAuthError, UsageCollector
from .tasks import TaskList
from .tools import (
    TOOL_REGISTRY,
    TOOLS,
    ToolContext,
    ToolResult,
    create_tool_response,
    execute_tool,
    kill_process_tree,
)
from .validators import (
    ReadTracker,
    classify,
    read_before_edit_error,
    requires_approval,
    validate_read_before_edit,
)

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
DEFAULT_PROVIDER = "groq"
DEFAULT_MODEL = "moonshotai/kimi-k2-instruct"
DEBUG_LOG_NAME = "debug-agent.log"

MAX_ITERATIONS = 50
MAX_ARG_LOG = 1000

INTERRUPT_NOTE = "User has interrupted the request."
REJECTED_ERROR = "Tool execution canceled by user"
MALFORMED_ARGS_ERROR = "Error: Tool arguments were malformed or truncated"
INTERRUPTED_TOOL_ERROR = "Error: Tool call was interrupted by the user"

_encoder = tiktoken.get_encoding("cl100k_base")


class AgentState(enum.Enum):
    IDLE = "idle"
    AWAITING_PROVIDER = "awaiting_provider"
    EMITTING_TEXT = "emitting_text"
    DISPATCHING_TOOL = "dispatching_tool"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING_TOOL = "executing_tool"
    COMPLETE = "complete"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


TERMINAL_STATES = (AgentState.COMPLETE, AgentState.FAILED, AgentState.INTERRUPTED)


class ApprovalDecision(enum.Enum):
    APPROVED = "approved"
    APPROVED_AUTO_SESSION = "approved_auto_session"
    REJECTED = "rejected"

    @property
    def approved(self) -> bool:
        return self is not ApprovalDecision.REJECTED


@dataclass
class ToolCallbacks:
    """Observer hooks fired by the loop. Every hook is optional.

    on_tool_approval returns an ApprovalDecision (a bool is accepted too).
    Without it, tools that need approval are rejected. on_max_iterations
    returns True to keep going; without it the cycle ends at the ceiling.
    """

    on_thinking_text: Callable[[str, str | None], None] | None = None
    on_final_message: Callable[[str, str | None], None] | None = None
    on_tool_start: Callable[[str, dict], None] | None = None
    on_tool_end: Callable[[str, ToolResult], None] | None = None
    on_tool_approval: Callable[[str, dict], "ApprovalDecision | bool"] | None = None
    on_max_iterations: Callable[[int], bool] | None = None
    on_api_usage: Callable[[dict], None] | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_tool_name(name: str) -> str:
    """Strip a provider namespace, e.g. 'repo_browser.read_file' -> 'read_file'."""
    if not name or name in TOOL_REGISTRY:
        return name or ""
    if "." in name:
        return name.rsplit(".", 1)[1]
    return name


def decode_arguments(raw) -> dict | None:
    """Decode a tool-call argument payload. None means malformed or not an object."""
    if isinstance(raw, dict):
        return raw
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def _raw_arguments(raw) -> str:
    """Argument payload as the JSON string stored in the transcript."""
    if isinstance(raw, str):
        return raw
    if raw is None:
        return "{}"
    return json.dumps(raw)


def mask_api_key(key: str | None) -> str:
    if not key:
        return "<none>"
    if len(key) <= 8:
        return "****"
    return f"{key[:4]}...{key[-4:]}"


def _error_status(exc: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def _error_details(exc: BaseException) -> tuple[str, str | None]:
    """(message, code) from an exception, preferring a nested provider error body."""
    message = getattr(exc, "message", None) or str(exc)
    code = getattr(exc, "code", None)
    for attr in ("body", "error"):
        body = getattr(exc, attr, None)
        if isinstance(body, dict):
            inner = body.get("error", body)
            if isinstance(inner, dict):
                message = inner.get("message") or message
                code = inner.get("code") or code
            break
    return str(message), (str(code) if code else None)


def format_api_error(exc: BaseException) -> str:
    """Render a provider failure as 'API Error (<status>): <message> (Code: <code>)'."""
    status = _error_status(exc)
    message, code = _error_details(exc)
    text = f"API Error ({status}): {message}" if status else f"API Error: {message}"
    if code:
        text += f" (Code: {code})"
    return text


def is_auth_error(exc: BaseException) -> bool:
    if isinstance(exc, ProviderAuthError) or _error_status(exc) == 401:
        return True
    import litellm

    return isinstance(exc, litellm.AuthenticationError)


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.get("content", "") or ""
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments", "") or "")
        total += len(_encoder.encode(content))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # ~4 tokens per message for role and separators
    total += 4 * len(messages)
    return total


def _text_attr(message, name: str) -> str | None:
    value = getattr(message, name, None)
    return value if isinstance(value, str) and value else None


def _usage_dict(usage) -> dict | None:
    if usage is None:
        return None
    out = {}
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        value = usage.get(key) if isinstance(usage, dict) else getattr(usage, key, None)
        out[key] = value if isinstance(value, int) else 0
    return out


def enable_debug_log(project_root: str | Path) -> Path:
    """Attach a DEBUG file handler for the agentloop loggers. Idempotent per path."""
    path = Path(project_root).resolve() / DEBUG_LOG_NAME
    pkg_logger = logging.getLogger("agentloop")
    for handler in pkg_logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == path:
            return path
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    pkg_logger.addHandler(handler)
    pkg_logger.setLevel(logging.DEBUG)
    return path


def build_system_message(model: str, project_root: str | Path) -> str:
    template = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
    return template.format(model=model, project_root=Path(project_root).resolve())


def call_llm(
    base_url,
    model_id,
    messages,
    temperature,
    tools,
    *,
    provider=DEFAULT_PROVIDER,
    api_key=None,
):
    """Call LiteLLM with the appropriate provider. Returns (message, finish_reason, usage).

    Provider exceptions propagate unchanged so the loop can tell
    authentication failures apart from everything else.
    """
    import litellm

    litellm.suppress_debug_info = True

    if provider == "groq":
        model_str = f"groq/{model_id}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    elif provider == "openrouter":
        bare_id = (
            model_id[len("openrouter/") :]
            if model_id.startswith("openrouter/openrouter/")
            else model_id
        )
        model_str = f"openrouter/{bare_id}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    elif provider == "lmstudio":
        model_str = f"openai/{model_id}"
        kwargs = {
            "api_base": f"{base_url or 'http://127.0.0.1:1234'}/v1",
            "api_key": "lm-studio",
        }
    else:
        raise ConfigError(f"unknown provider {provider!r}")

    completion_kwargs = dict(
        model=model_str,
        messages=messages,
        tools=tools,
        tool_choice="auto",
        **kwargs,
    )
    if temperature is not None:
        completion_kwargs["temperature"] = temperature

    response = litellm.completion(**completion_kwargs)
    choice = response.choices[0]
    return choice.message, choice.finish_reason, _usage_dict(getattr(response, "usage", None))


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class Agent:
    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        provider: str = DEFAULT_PROVIDER,
        base_url: str | None = None,
        temperature: float | None = 1.0,
        system_message: str | None = None,
        project_root: str | Path = ".",
        debug: bool = False,
        config: dict | None = None,
    ):
        self.model = model
        self.provider = provider
        self.base_url = base_url
        self.temperature = temperature
        self.project_root = Path(project_root).resolve()
        self.debug = debug
        self._api_key = api_key
        self._config = config or {}
        self._custom_system_message = system_message

        self.session_auto_approve = False
        self.iterations = 0
        self.read_tracker = ReadTracker(self.project_root)
        self.usage = UsageCollector()
        self.callbacks = ToolCallbacks()
        self._tool_ctx = ToolContext(
            root=str(self.project_root),
            tracker=self.read_tracker,
            on_spawn=self._on_spawn,
        )

        self._lock = threading.Lock()
        self._state = AgentState.IDLE
        self._processing = False
        self._interrupted = False
        self._provider_done: threading.Event | None = None
        self._active_proc = None

        self.messages: list[dict] = [
            {"role": "system", "content": self._system_message()}
        ]

        if debug:
            path = enable_debug_log(self.project_root)
            logger.debug("debug log enabled at %s", path)
        logger.debug(
            "agent created: provider=%s model=%s key=%s",
            provider,
            model,
            mask_api_key(api_key),
        )

    @classmethod
    def create(
        cls,
        model: str,
        temperature: float | None = 1.0,
        system_message: str | None = None,
        debug: bool = False,
        *,
        config: dict | None = None,
        **kwargs,
    ) -> "Agent":
        """Build an agent, letting a configured default model win over `model`."""
        config = config or {}
        chosen = config.get("model") or model
        return cls(
            chosen,
            temperature=temperature,
            system_message=system_message,
            debug=debug,
            config=config,
            **kwargs,
        )

    # -- accessors ---------------------------------------------------------

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def interrupted(self) -> bool:
        return self._interrupted

    @property
    def task_list(self) -> TaskList | None:
        return self._tool_ctx.task_list

    def get_current_model(self) -> str:
        return self.model

    def estimate_context_tokens(self) -> int:
        return estimate_tokens(self.messages, TOOLS)

    # -- configuration -----------------------------------------------------

    def set_api_key(self, api_key: str | None) -> None:
        self._api_key = api_key
        logger.debug("api key set: %s", mask_api_key(api_key))

    def set_model(self, model: str) -> None:
        self.model = model
        if self._custom_system_message is None and self.messages:
            self.messages[0] = {"role": "system", "content": self._system_message()}
        logger.debug("model set to %s", model)

    def set_session_auto_approve(self, enabled: bool) -> None:
        self.session_auto_approve = bool(enabled)

    def set_tool_callbacks(self, callbacks: ToolCallbacks) -> None:
        self.callbacks = callbacks

    def clear_history(self) -> None:
        """Drop the conversation but keep the system message. Resets the read tracker."""
        self.messages[:] = [{"role": "system", "content": self._system_message()}]
        self.read_tracker.reset()
        self._tool_ctx.task_list = None
        self.iterations = 0
        logger.debug("history cleared")

    def _system_message(self) -> str:
        if self._custom_system_message is not None:
            return self._custom_system_message
        return build_system_message(self.model, self.project_root)

    def _resolve_api_key(self) -> str:
        if self.provider == "lmstudio":
            return self._api_key or "lm-studio"
        key = self._api_key or resolve_api_key(self.provider, None, self._config)
        if not key:
            raise ConfigError(
                f"No API key available. Set {api_key_env_var(self.provider)} "
                "or add api_key to the config file."
            )
        return key

    # -- interruption ------------------------------------------------------

    def interrupt(self) -> None:
        """Abort the current cycle from any thread. Idempotent, never raises.

        The in-flight provider call is abandoned, a running command has its
        process tree killed, and one system note is appended.
        """
        with self._lock:
            if not self._processing or self._interrupted:
                return
            self._interrupted = True
            self._state = AgentState.INTERRUPTED
            self.messages.append({"role": "system", "content": INTERRUPT_NOTE})
            done = self._provider_done
            proc = self._active_proc
        logger.info("request interrupted by user")
        if done is not None:
            done.set()
        if proc is not None:
            kill_process_tree(proc)

    def _on_spawn(self, proc) -> None:
        with self._lock:
            self._active_proc = proc
            interrupted = self._interrupted
        if interrupted:
            kill_process_tree(proc)

    def _append(self, message: dict) -> bool:
        """Append to the transcript unless the cycle was interrupted."""
        with self._lock:
            if self._interrupted:
                return False
            self.messages.append(message)
            return True

    def _set_state(self, state: AgentState) -> None:
        with self._lock:
            if not self._interrupted:
                self._state = state

    # -- chat --------------------------------------------------------------

    def chat(self, user_input: str) -> AgentState:
        """Run one request cycle. Returns COMPLETE, FAILED or INTERRUPTED.

        Raises ConfigError when no credential is available and
        ProviderAuthError when the provider rejects it.
        """
        with self._lock:
            if self._processing:
                raise AgentError("A request is already in progress")
            self._processing = True
            self._interrupted = False
            self._state = AgentState.IDLE

        try:
            api_key = self._resolve_api_key()
            self._repair_dangling_tool_calls()
            self.messages.append({"role": "user", "content": user_input})
            self.iterations = 0
            state = self._run(api_key)
            with self._lock:
                if self._interrupted:
                    state = AgentState.INTERRUPTED
                self._state = state
            return state
        except Exception:
            with self._lock:
                self._state = AgentState.FAILED
            raise
        finally:
            with self._lock:
                self._processing = False
                self._provider_done = None
                self._active_proc = None

    def _run(self, api_key: str) -> AgentState:
        cb = self.callbacks
        while True:
            if self._interrupted:
                return AgentState.INTERRUPTED

            if self.iterations >= MAX_ITERATIONS:
                logger.info("reached %d iterations", MAX_ITERATIONS)
                keep_going = bool(cb.on_max_iterations and cb.on_max_iterations(MAX_ITERATIONS))
                if self._interrupted:
                    return AgentState.INTERRUPTED
                if not keep_going:
                    return AgentState.COMPLETE
                self.iterations = 0

            self._set_state(AgentState.AWAITING_PROVIDER)
            t0 = time.monotonic()
            try:
                response = self._call_provider(api_key)
            except Exception as exc:
                if self._interrupted:
                    logger.debug("discarding provider error after interrupt: %s", exc)
                    return AgentState.INTERRUPTED
                if is_auth_error(exc):
                    message, code = _error_details(exc)
                    logger.error("authentication failed: %s", message)
                    raise ProviderAuthError(message, status=401, code=code) from exc
                text = format_api_error(exc)
                logger.error("provider call failed: %s", text)
                self._append({"role": "system", "content": text})
                return AgentState.FAILED
            if response is None:
                return AgentState.INTERRUPTED

            message, finish_reason, usage = response
            self.usage.record_llm_call(time.monotonic() - t0, usage)
            if usage and cb.on_api_usage:
                cb.on_api_usage(usage)

            content = _text_attr(message, "content") or ""
            reasoning = _text_attr(message, "reasoning_content") or _text_attr(
                message, "reasoning"
            )
            tool_calls = getattr(message, "tool_calls", None) or []
            logger.debug(
                "response: finish_reason=%s tool_calls=%d content_chars=%d",
                finish_reason,
                len(tool_calls),
                len(content),
            )

            if not tool_calls:
                self._set_state(AgentState.EMITTING_TEXT)
                if not self._append({"role": "assistant", "content": content}):
                    return AgentState.INTERRUPTED
                if cb.on_final_message and (content or reasoning):
                    cb.on_final_message(content, reasoning)
                return AgentState.COMPLETE

            calls = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {
                        "name": normalize_tool_name(tc.function.name),
                        "arguments": _raw_arguments(tc.function.arguments),
                    },
                }
                for tc in tool_calls
            ]
            if not self._append(
                {"role": "assistant", "content": content or None, "tool_calls": calls}
            ):
                return AgentState.INTERRUPTED
            if content and cb.on_thinking_text:
                self._set_state(AgentState.EMITTING_TEXT)
                cb.on_thinking_text(content, reasoning)

            for call in calls:
                if self._interrupted:
                    return AgentState.INTERRUPTED
                result = self._handle_tool_call(call)
                if result is None or not self._append(
                    {
                        "role": "tool",
                        "tool_call_id": call["id"],
                        "name": call["function"]["name"],
                        "content": result.to_json(),
                    }
                ):
                    return AgentState.INTERRUPTED

            self.iterations += 1

    def _call_provider(self, api_key: str):
        """Run call_llm on a worker thread; None if interrupted while waiting.

        interrupt() sets the same event, so the wait ends at whichever comes
        first. A late result or error from an abandoned call is dropped.
        """
        done = threading.Event()
        box: dict[str, Any] = {}
        with self._lock:
            if self._interrupted:
                return None
            self._provider_done = done
        messages = [dict(m) for m in self.messages]
        logger.debug(
            "calling %s/%s with %d messages (~%d tokens)",
            self.provider,
            self.model,
            len(messages),
            estimate_tokens(messages, TOOLS),
        )

        def worker():
            try:
                box["result"] = call_llm(
                    self.base_url,
                    self.model,
                    messages,
                    self.temperature,
                    TOOLS,
                    provider=self.provider,
                    api_key=api_key,
                )
            except Exception as exc:
                box["error"] = exc
            finally:
                done.set()

        threading.Thread(target=worker, name="agentloop-provider", daemon=True).start()
        done.wait()

        with self._lock:
            self._provider_done = None
            if self._interrupted:
                return None
        if "error" in box:
            raise box["error"]
        return box["result"]

    def _handle_tool_call(self, call: dict) -> ToolResult | None:
        """Gate and run one tool call. None means the cycle was interrupted."""
        cb = self.callbacks
        name = call["function"]["name"]
        raw_args = call["function"]["arguments"]

        args = decode_arguments(raw_args)
        if args is None:
            logger.warning(
                "malformed arguments for %s: %s", name, str(raw_args)[:MAX_ARG_LOG]
            )
            return create_tool_response(False, error=MALFORMED_ARGS_ERROR)

        logger.debug(
            "tool call %s (%s): %s", name, classify(name), json.dumps(args)[:MAX_ARG_LOG]
        )
        if self._interrupted:
            return None
        self._set_state(AgentState.DISPATCHING_TOOL)
        if cb.on_tool_start:
            cb.on_tool_start(name, args)

        if name not in TOOL_REGISTRY:
            logger.warning("model requested unknown tool %r", name)
            return self._finish_tool(name, execute_tool(name, args, self._tool_ctx), 0.0)

        file_path = args.get("file_path")
        if (
            name == "edit_file"
            and isinstance(file_path, str)
            and not validate_read_before_edit(file_path, self.read_tracker)
        ):
            result = create_tool_response(False, error=read_before_edit_error(file_path))
            return self._finish_tool(name, result, 0.0)

        if requires_approval(name, self.session_auto_approve):
            # on_tool_start may have interrupted; never ask about a cancelled cycle.
            if self._interrupted:
                return None
            self._set_state(AgentState.AWAITING_APPROVAL)
            self.usage.record_approval_request(name)
            decision = self._ask_approval(name, args)
            if self._interrupted:
                return None
            if decision is ApprovalDecision.APPROVED_AUTO_SESSION:
                self.session_auto_approve = True
            if not decision.approved:
                logger.info("tool %s rejected by user", name)
                result = ToolResult(success=False, error=REJECTED_ERROR, user_rejected=True)
                return self._finish_tool(name, result, 0.0)

        if self._interrupted:
            return None
        self._set_state(AgentState.EXECUTING_TOOL)
        t0 = time.monotonic()
        try:
            result = execute_tool(name, args, self._tool_ctx)
        except Exception:
            logger.exception("tool %s raised outside the executor boundary", name)
            result = create_tool_response(False, error="Error: Unexpected tool error")
        finally:
            with self._lock:
                self._active_proc = None
        if self._interrupted:
            return None
        return self._finish_tool(name, result, time.monotonic() - t0)

    def _ask_approval(self, name: str, args: dict) -> ApprovalDecision:
        hook = self.callbacks.on_tool_approval
        if hook is None:
            return ApprovalDecision.REJECTED
        decision = hook(name, args)
        if isinstance(decision, ApprovalDecision):
            return decision
        return ApprovalDecision.APPROVED if decision else ApprovalDecision.REJECTED

    def _finish_tool(self, name: str, result: ToolResult, elapsed: float) -> ToolResult:
        self.usage.record_tool_call(
            name,
            result.success,
            elapsed,
            user_rejected=result.user_rejected,
            error=result.error,
        )
        if not result.success:
            logger.debug("tool %s failed: %s", name, result.error)
        if self.callbacks.on_tool_end:
            self.callbacks.on_tool_end(name, result)
        return result

    def _repair_dangling_tool_calls(self) -> None:
        """Give every unanswered tool call a synthetic 'interrupted' result.

        Results are placed directly after the assistant turn's existing tool
        turns so providers see a well-formed sequence.
        """
        interrupted = create_tool_response(False, error=INTERRUPTED_TOOL_ERROR).to_json()
        out: list[dict] = []
        added = 0
        i = 0
        msgs = self.messages
        while i < len(msgs):
            msg = msgs[i]
            out.append(msg)
            i += 1
            calls = msg.get("tool_calls") if msg.get("role") == "assistant" else None
            if not calls:
                continue
            answered = set()
            while i < len(msgs) and msgs[i].get("role") == "tool":
                answered.add(msgs[i].get("tool_call_id"))
                out.append(msgs[i])
                i += 1
            for call in calls:
                if call["id"] not in answered:
                    out.append(
                        {
                            "role": "tool",
                            "tool_call_id": call["id"],
                            "name": call["function"]["name"],
                            "content": interrupted,
                        }
                    )
                    added += 1
        if added:
            logger.debug("repaired %d dangling tool call(s)", added)
            self.messages[:] = out
