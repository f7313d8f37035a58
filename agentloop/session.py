"""Presentation adapter between an Agent and a user interface.

ChatSession keeps a display-oriented message list, turns the agent's
callbacks into message updates, and holds the pending approval and
max-iteration questions until the UI answers them.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .agent import Agent, AgentState, ApprovalDecision, ToolCallbacks, format_api_error
from .tools import ToolResult
from .validators import SAFE, classify

logger = logging.getLogger(__name__)

INTERRUPT_MESSAGE = "User has interrupted the request."

ATTENTION_APPROVAL = "approval"
ATTENTION_MAX_ITERATIONS = "max_iterations"
ATTENTION_DONE = "done"


@dataclass
class ToolExecution:
    name: str
    args: dict
    status: str = "pending"  # pending | completed | failed | canceled
    needs_approval: bool = False
    result: ToolResult | None = None


@dataclass
class ChatMessage:
    id: str
    role: str  # user | assistant | system | tool
    content: str
    reasoning: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)
    tool_execution: ToolExecution | None = None
    final: bool = False


@dataclass
class PendingApproval:
    tool_name: str
    tool_args: dict
    decision: ApprovalDecision | None = None
    resolved: threading.Event = field(default_factory=threading.Event)


@dataclass
class PendingMaxIterations:
    max_iterations: int
    answer: bool | None = None
    resolved: threading.Event = field(default_factory=threading.Event)


def _call(hook, *args):
    if hook is not None:
        hook(*args)


def error_text(exc: BaseException) -> str:
    """System-message text for an exception escaping Agent.chat()."""
    if getattr(exc, "status", None) is not None or getattr(exc, "status_code", None):
        return format_api_error(exc)
    return f"Error: {exc}"


class ChatSession:
    """UI-facing state for one agent.

    approval_timeout bounds how long an approval (or max-iterations)
    question waits for an answer. None waits indefinitely; on timeout the
    tool is rejected and the cycle stops at the iteration ceiling.
    """

    def __init__(
        self,
        agent: Agent,
        on_start_request: Callable[[], None] | None = None,
        on_add_api_tokens: Callable[[dict], None] | None = None,
        on_pause_request: Callable[[], None] | None = None,
        on_resume_request: Callable[[], None] | None = None,
        on_complete_request: Callable[[], None] | None = None,
        approval_timeout: float | None = None,
        on_message: Callable[[ChatMessage], None] | None = None,
    ):
        self.agent = agent
        self.on_start_request = on_start_request
        self.on_add_api_tokens = on_add_api_tokens
        self.on_pause_request = on_pause_request
        self.on_resume_request = on_resume_request
        self.on_complete_request = on_complete_request
        self.on_message = on_message
        self.approval_timeout = approval_timeout

        self.messages: list[ChatMessage] = []
        self.user_message_history: list[str] = []
        self.is_processing = False
        self.current_tool_execution: ToolExecution | None = None
        self.pending_approval: PendingApproval | None = None
        self.pending_max_iterations: PendingMaxIterations | None = None
        self.session_auto_approve = False
        self.show_reasoning = True
        self.last_state: AgentState | None = None
        self._interrupt_noted = False

        self._cond = threading.Condition()
        self._worker: threading.Thread | None = None

    # -- messages ------------------------------------------------------------

    def add_message(
        self,
        role: str,
        content: str,
        reasoning: str | None = None,
        tool_execution: ToolExecution | None = None,
        final: bool = False,
    ) -> str:
        msg = ChatMessage(
            id=uuid.uuid4().hex,
            role=role,
            content=content,
            reasoning=reasoning,
            tool_execution=tool_execution,
            final=final,
        )
        with self._cond:
            self.messages.append(msg)
            self._cond.notify_all()
        _call(self.on_message, msg)
        return msg.id

    def _update_tool_message(self, name: str, content: str, status: str, result) -> None:
        updated = None
        with self._cond:
            for msg in reversed(self.messages):
                te = msg.tool_execution
                if te is not None and te.name == name and te.status == "pending":
                    te.status = status
                    te.result = result
                    msg.content = content
                    updated = msg
                    break
            self.current_tool_execution = None
            self._cond.notify_all()
        if updated is not None:
            _call(self.on_message, updated)

    # -- agent callbacks -----------------------------------------------------

    def _callbacks(self) -> ToolCallbacks:
        return ToolCallbacks(
            on_thinking_text=self._on_thinking_text,
            on_final_message=self._on_final_message,
            on_tool_start=self._on_tool_start,
            on_tool_end=self._on_tool_end,
            on_tool_approval=self._on_tool_approval,
            on_max_iterations=self._on_max_iterations,
            on_api_usage=self._on_api_usage,
        )

    def _on_thinking_text(self, text: str, reasoning: str | None = None) -> None:
        self.add_message("assistant", text, reasoning=reasoning)

    def _on_final_message(self, text: str, reasoning: str | None = None) -> None:
        self.add_message("assistant", text, reasoning=reasoning, final=True)

    def _on_tool_start(self, name: str, args: dict) -> None:
        execution = ToolExecution(
            name=name, args=args, needs_approval=classify(name) != SAFE
        )
        with self._cond:
            self.current_tool_execution = execution
        self.add_message("tool", f"Executing {name}...", tool_execution=execution)

    def _on_tool_end(self, name: str, result: ToolResult) -> None:
        if result.success:
            self._update_tool_message(
                name, f"✓ {name} completed successfully", "completed", result
            )
        elif result.user_rejected:
            self._update_tool_message(name, f"🚫 {name} rejected by user", "canceled", result)
        else:
            reason = result.error or "Unknown error"
            self._update_tool_message(name, f"🔴 {name} failed: {reason}", "failed", result)

    def _on_tool_approval(self, name: str, args: dict) -> ApprovalDecision:
        pending = PendingApproval(tool_name=name, tool_args=args)
        with self._cond:
            # interrupt_request interrupts the agent before taking this lock.
            if self.agent.interrupted:
                return ApprovalDecision.REJECTED
            self.pending_approval = pending
            self._cond.notify_all()
        _call(self.on_pause_request)

        if not pending.resolved.wait(self.approval_timeout):
            logger.warning(
                "approval for %s timed out after %ss, rejecting", name, self.approval_timeout
            )
        with self._cond:
            if self.pending_approval is pending:
                self.pending_approval = None
            self._cond.notify_all()
        _call(self.on_resume_request)
        return pending.decision or ApprovalDecision.REJECTED

    def _on_max_iterations(self, count: int) -> bool:
        pending = PendingMaxIterations(max_iterations=count)
        with self._cond:
            if self.agent.interrupted:
                return False
            self.pending_max_iterations = pending
            self._cond.notify_all()
        _call(self.on_pause_request)

        if not pending.resolved.wait(self.approval_timeout):
            logger.warning("max-iterations question timed out, stopping")
        with self._cond:
            if self.pending_max_iterations is pending:
                self.pending_max_iterations = None
            self._cond.notify_all()
        _call(self.on_resume_request)
        return bool(pending.answer)

    def _on_api_usage(self, usage: dict) -> None:
        _call(self.on_add_api_tokens, usage)

    # -- intents -------------------------------------------------------------

    def _begin(self, text: str) -> bool:
        with self._cond:
            if self.is_processing:
                return False
            self.is_processing = True
            self._interrupt_noted = False
        self.add_message("user", text)
        self.user_message_history.append(text)
        _call(self.on_start_request)
        return True

    def _run(self, text: str) -> AgentState | None:
        state = None
        try:
            self.agent.set_tool_callbacks(self._callbacks())
            state = self.agent.chat(text)
            if state is AgentState.FAILED:
                # Provider failures are recorded as a system turn in the transcript.
                note = self.agent.messages[-1] if self.agent.messages else {}
                if note.get("role") == "system":
                    self.add_message("system", note["content"])
        except Exception as exc:
            logger.debug("chat raised %s", type(exc).__name__)
            self.add_message("system", error_text(exc))
        finally:
            with self._cond:
                self.is_processing = False
                self.current_tool_execution = None
                self.last_state = state
                self._cond.notify_all()
            _call(self.on_complete_request)
        return state

    def send_message(self, text: str) -> AgentState | None:
        """Run a request on the calling thread. Ignored while one is in flight."""
        if not self._begin(text):
            return None
        return self._run(text)

    def start_message(self, text: str) -> threading.Thread | None:
        """Run a request on a background thread. Returns None if one is in flight."""
        if not self._begin(text):
            return None
        worker = threading.Thread(
            target=self._run, args=(text,), name="agentloop-chat", daemon=True
        )
        self._worker = worker
        worker.start()
        return worker

    def wait_for_attention(self, timeout: float | None = None) -> str | None:
        """Block until the UI has something to do.

        Returns ATTENTION_APPROVAL, ATTENTION_MAX_ITERATIONS, ATTENTION_DONE,
        or None on timeout.
        """
        with self._cond:
            self._cond.wait_for(
                lambda: self.pending_approval is not None
                or self.pending_max_iterations is not None
                or not self.is_processing,
                timeout,
            )
            if self.pending_approval is not None:
                return ATTENTION_APPROVAL
            if self.pending_max_iterations is not None:
                return ATTENTION_MAX_ITERATIONS
            if not self.is_processing:
                return ATTENTION_DONE
            return None

    def approve_tool_execution(self, approved: bool, auto_approve_session: bool = False) -> bool:
        """Resolve the pending approval. Returns False if nothing was pending."""
        with self._cond:
            pending = self.pending_approval
            if pending is None:
                return False
            if approved and auto_approve_session:
                pending.decision = ApprovalDecision.APPROVED_AUTO_SESSION
                self.session_auto_approve = True
            elif approved:
                pending.decision = ApprovalDecision.APPROVED
            else:
                pending.decision = ApprovalDecision.REJECTED
            self.pending_approval = None
            self._cond.notify_all()
        pending.resolved.set()
        return True

    def respond_to_max_iterations(self, continue_: bool) -> bool:
        with self._cond:
            pending = self.pending_max_iterations
            if pending is None:
                return False
            pending.answer = bool(continue_)
            self.pending_max_iterations = None
            self._cond.notify_all()
        pending.resolved.set()
        return True

    def set_api_key(self, api_key: str) -> None:
        self.agent.set_api_key(api_key)

    def clear_history(self) -> None:
        with self._cond:
            self.messages.clear()
            self.user_message_history.clear()
            self._cond.notify_all()
        self.agent.clear_history()

    def toggle_auto_approve(self) -> bool:
        self.session_auto_approve = not self.session_auto_approve
        self.agent.set_session_auto_approve(self.session_auto_approve)
        return self.session_auto_approve

    def toggle_reasoning(self) -> bool:
        self.show_reasoning = not self.show_reasoning
        return self.show_reasoning

    def interrupt_request(self) -> None:
        """Interrupt the agent and release any question it is blocked on."""
        self.agent.interrupt()
        with self._cond:
            note = self.is_processing and not self._interrupt_noted
            if note:
                self._interrupt_noted = True
            approval = self.pending_approval
            max_iter = self.pending_max_iterations
            self.pending_approval = None
            self.pending_max_iterations = None
            for msg in self.messages:
                te = msg.tool_execution
                if te is not None and te.status == "pending":
                    te.status = "canceled"
                    msg.content = f"🚫 {te.name} canceled"
            self.current_tool_execution = None
            self._cond.notify_all()
        if approval is not None:
            approval.decision = ApprovalDecision.REJECTED
            approval.resolved.set()
        if max_iter is not None:
            max_iter.answer = False
            max_iter.resolved.set()
        if note:
            self.add_message("system", INTERRUPT_MESSAGE)
