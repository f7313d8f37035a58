"""Tests for the Agent request cycle, with the provider call faked out."""

import json
import logging
import sys
import threading
import time
from types import SimpleNamespace

import pytest

from agentloop import agent as agent_mod
from agentloop.agent import (
    INTERRUPT_NOTE,
    INTERRUPTED_TOOL_ERROR,
    MALFORMED_ARGS_ERROR,
    MAX_ITERATIONS,
    REJECTED_ERROR,
    Agent,
    AgentState,
    ApprovalDecision,
    ToolCallbacks,
    decode_arguments,
    format_api_error,
    mask_api_key,
    normalize_tool_name,
)
from agentloop.report import AgentError, ConfigError, ProviderAuthError
from agentloop.validators import read_before_edit_error

USAGE = {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}


def _make_message(content=None, tool_calls=None, **extra):
    return SimpleNamespace(content=content, tool_calls=tool_calls, **extra)


def _make_tool_call(name, args, call_id="call_1"):
    arguments = json.dumps(args) if isinstance(args, dict) else args
    return SimpleNamespace(
        id=call_id, function=SimpleNamespace(name=name, arguments=arguments)
    )


class FakeProvider:
    """Stands in for call_llm. Replays scripted responses; the last one repeats.

    An entry may be a message, an exception to raise, or a callable taking
    the message list and returning either of those.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.api_keys = []

    def __call__(self, base_url, model_id, messages, temperature, tools, *, provider, api_key):
        self.calls.append(messages)
        self.api_keys.append(api_key)
        idx = min(len(self.calls) - 1, len(self.responses) - 1)
        item = self.responses[idx]
        if callable(item) and not isinstance(item, SimpleNamespace):
            item = item(messages)
        if isinstance(item, BaseException):
            raise item
        return item, "stop" if not item.tool_calls else "tool_calls", dict(USAGE)


class FakeAPIError(Exception):
    def __init__(self, status_code, message, code):
        super().__init__(message)
        self.status_code = status_code
        self.body = {"error": {"message": message, "code": code}}


class Recorder:
    """Collects every callback invocation."""

    def __init__(self, approval=ApprovalDecision.APPROVED, max_iterations=False):
        self.events = []
        self.finals = []
        self.thinking = []
        self.usage = []
        self.approvals = []
        self.max_iter_calls = []
        self.ends = []
        self._approval = approval
        self._max_iterations = max_iterations

    def callbacks(self, with_approval=True):
        return ToolCallbacks(
            on_thinking_text=lambda text, reasoning=None: self.thinking.append((text, reasoning)),
            on_final_message=lambda text, reasoning=None: self.finals.append((text, reasoning)),
            on_tool_start=self._start,
            on_tool_end=self._end,
            on_tool_approval=self._approve if with_approval else None,
            on_max_iterations=self._max_iter,
            on_api_usage=self.usage.append,
        )

    def _start(self, name, args):
        self.events.append(("start", name, args))

    def _end(self, name, result):
        self.events.append(("end", name))
        self.ends.append((name, result))

    def _approve(self, name, args):
        self.events.append(("approval", name))
        self.approvals.append((name, args))
        if callable(self._approval):
            return self._approval(name, args)
        return self._approval

    def _max_iter(self, count):
        self.max_iter_calls.append(count)
        if isinstance(self._max_iterations, list):
            return self._max_iterations.pop(0) if self._max_iterations else False
        return self._max_iterations


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)


def _agent(tmp_path, monkeypatch, fake_llm, recorder=None, **kwargs):
    monkeypatch.setattr(agent_mod, "call_llm", fake_llm)
    kwargs.setdefault("api_key", "test-key")
    a = Agent("test-model", project_root=tmp_path, **kwargs)
    if recorder is not None:
        a.set_tool_callbacks(recorder.callbacks())
    return a


def _tool_turns(agent):
    return [m for m in agent.messages if m["role"] == "tool"]


def _system_notes(agent, text):
    return [m for m in agent.messages if m["role"] == "system" and m["content"] == text]


# =========================================================================
# Helpers
# =========================================================================


class TestHelpers:
    def test_normalize_tool_name(self):
        assert normalize_tool_name("repo_browser.read_file") == "read_file"
        assert normalize_tool_name("read_file") == "read_file"
        assert normalize_tool_name("mystery") == "mystery"
        assert normalize_tool_name("") == ""

    def test_decode_arguments(self):
        assert decode_arguments('{"a": 1}') == {"a": 1}
        assert decode_arguments({"a": 1}) == {"a": 1}
        assert decode_arguments("") == {}
        assert decode_arguments(None) == {}
        assert decode_arguments('{ "file_path": "test.js" ') is None
        assert decode_arguments("[1, 2]") is None

    def test_mask_api_key(self):
        assert mask_api_key(None) == "<none>"
        assert mask_api_key("short") == "****"
        assert mask_api_key("gsk_abcdefghijkl") == "gsk_...ijkl"

    def test_format_api_error(self):
        exc = FakeAPIError(500, "Internal server error", "internal_error")
        assert format_api_error(exc) == (
            "API Error (500): Internal server error (Code: internal_error)"
        )

    def test_format_api_error_without_status(self):
        assert format_api_error(RuntimeError("boom")) == "API Error: boom"


# =========================================================================
# Plain responses
# =========================================================================


class TestFinalResponse:
    def test_simple_response(self, tmp_path, monkeypatch):
        rec = Recorder()
        provider = FakeProvider(_make_message("Simple response"))
        a = _agent(tmp_path, monkeypatch, provider, rec)

        state = a.chat("Hello")

        assert state is AgentState.COMPLETE
        assert a.state is AgentState.COMPLETE
        assert rec.finals == [("Simple response", None)]
        assert rec.usage == [USAGE]
        assert a.messages[-1] == {"role": "assistant", "content": "Simple response"}
        assert a.messages[-2] == {"role": "user", "content": "Hello"}
        assert not a.is_processing

    def test_reasoning_is_forwarded(self, tmp_path, monkeypatch):
        rec = Recorder()
        provider = FakeProvider(_make_message("Answer", reasoning="because"))
        a = _agent(tmp_path, monkeypatch, provider, rec)
        a.chat("Why?")
        assert rec.finals == [("Answer", "because")]

    def test_usage_collected(self, tmp_path, monkeypatch):
        a = _agent(tmp_path, monkeypatch, FakeProvider(_make_message("ok")))
        a.chat("hi")
        assert a.usage.llm_calls == 1
        assert a.usage.total_tokens == 15

    def test_system_message_first(self, tmp_path, monkeypatch):
        provider = FakeProvider(_make_message("ok"))
        a = _agent(tmp_path, monkeypatch, provider)
        a.chat("hi")
        sent = provider.calls[0]
        assert sent[0]["role"] == "system"
        assert "test-model" in sent[0]["content"]

    def test_custom_system_message(self, tmp_path, monkeypatch):
        provider = FakeProvider(_make_message("ok"))
        a = _agent(tmp_path, monkeypatch, provider, system_message="Be terse.")
        a.chat("hi")
        assert provider.calls[0][0] == {"role": "system", "content": "Be terse."}


# =========================================================================
# Tool dispatch and approval
# =========================================================================


class TestToolDispatch:
    def test_safe_tool_runs_without_approval(self, tmp_path, monkeypatch):
        (tmp_path / "main.py").write_text("")
        rec = Recorder()
        provider = FakeProvider(
            _make_message(tool_calls=[_make_tool_call("list_files", {"directory": "."})]),
            _make_message("Here are the files"),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)

        assert a.chat("List files") is AgentState.COMPLETE
        assert rec.approvals == []
        assert [e[0] for e in rec.events] == ["start", "end"]
        assert rec.ends[0][1].success

        turns = _tool_turns(a)
        assert len(turns) == 1
        assert turns[0]["tool_call_id"] == "call_1"
        assert json.loads(turns[0]["content"])["success"] is True
        assert rec.finals == [("Here are the files", None)]

    def test_rejected_dangerous_tool(self, tmp_path, monkeypatch):
        target = tmp_path / "important.txt"
        target.write_text("keep me")
        rec = Recorder(approval=ApprovalDecision.REJECTED)
        provider = FakeProvider(
            _make_message(
                tool_calls=[_make_tool_call("delete_file", {"file_path": "important.txt"})]
            ),
            _make_message("Okay, I won't delete it."),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)

        assert a.chat("Delete important.txt") is AgentState.COMPLETE
        assert rec.approvals == [("delete_file", {"file_path": "important.txt"})]
        name, result = rec.ends[0]
        assert name == "delete_file"
        assert not result.success
        assert result.user_rejected
        assert result.error == REJECTED_ERROR
        assert target.read_text() == "keep me"
        assert json.loads(_tool_turns(a)[0]["content"])["userRejected"] is True
        assert a.usage.rejections == 1

    def test_event_order_for_approved_tool(self, tmp_path, monkeypatch):
        (tmp_path / "gone.txt").write_text("")
        rec = Recorder(approval=ApprovalDecision.APPROVED)
        provider = FakeProvider(
            _make_message(tool_calls=[_make_tool_call("delete_file", {"file_path": "gone.txt"})]),
            _make_message("done"),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)
        a.chat("delete it")
        assert [e[0] for e in rec.events] == ["start", "approval", "end"]
        assert not (tmp_path / "gone.txt").exists()

    def test_auto_approve_skips_create_but_not_execute(self, tmp_path, monkeypatch):
        rec = Recorder(approval=ApprovalDecision.REJECTED)
        provider = FakeProvider(
            _make_message(
                tool_calls=[
                    _make_tool_call(
                        "create_file", {"file_path": "new.py", "content": "x = 1"}, "call_1"
                    ),
                    _make_tool_call(
                        "execute_command",
                        {"command": "python new.py", "command_type": "python"},
                        "call_2",
                    ),
                ]
            ),
            _make_message("Created the file."),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)
        a.set_session_auto_approve(True)

        a.chat("Create and run")

        assert [name for name, _ in rec.approvals] == ["execute_command"]
        assert (tmp_path / "new.py").read_text() == "x = 1"
        results = {name: result for name, result in rec.ends}
        assert results["create_file"].success
        assert results["execute_command"].user_rejected
        assert [t["tool_call_id"] for t in _tool_turns(a)] == ["call_1", "call_2"]

    def test_approve_for_session_enables_auto_approve(self, tmp_path, monkeypatch):
        rec = Recorder(approval=ApprovalDecision.APPROVED_AUTO_SESSION)
        provider = FakeProvider(
            _make_message(
                tool_calls=[_make_tool_call("create_file", {"file_path": "a.txt", "content": ""})]
            ),
            _make_message(
                tool_calls=[
                    _make_tool_call(
                        "create_file", {"file_path": "b.txt", "content": ""}, "call_2"
                    )
                ]
            ),
            _make_message("done"),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)
        a.chat("make two files")
        assert a.session_auto_approve
        assert len(rec.approvals) == 1
        assert (tmp_path / "b.txt").exists()

    def test_bool_approval_accepted(self, tmp_path, monkeypatch):
        rec = Recorder(approval=True)
        provider = FakeProvider(
            _make_message(
                tool_calls=[_make_tool_call("create_file", {"file_path": "a.txt", "content": "x"})]
            ),
            _make_message("done"),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)
        a.chat("make a file")
        assert (tmp_path / "a.txt").exists()

    def test_no_approval_callback_rejects(self, tmp_path, monkeypatch):
        rec = Recorder()
        provider = FakeProvider(
            _make_message(
                tool_calls=[_make_tool_call("create_file", {"file_path": "a.txt", "content": "x"})]
            ),
            _make_message("done"),
        )
        a = _agent(tmp_path, monkeypatch, provider)
        a.set_tool_callbacks(rec.callbacks(with_approval=False))
        a.chat("make a file")
        assert not (tmp_path / "a.txt").exists()
        assert rec.ends[0][1].user_rejected

    def test_namespaced_tool_name_is_stripped(self, tmp_path, monkeypatch):
        (tmp_path / "test.js").write_text("console.log(1)")
        rec = Recorder()
        provider = FakeProvider(
            _make_message(
                tool_calls=[_make_tool_call("repo_browser.read_file", {"file_path": "test.js"})]
            ),
            _make_message("done"),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)
        a.chat("read it")
        assert rec.events[0] == ("start", "read_file", {"file_path": "test.js"})
        assert rec.ends[0][1].success
        assistant = [m for m in a.messages if m.get("tool_calls")][0]
        assert assistant["tool_calls"][0]["function"]["name"] == "read_file"

    def test_unknown_tool_not_offered_for_approval(self, tmp_path, monkeypatch):
        rec = Recorder()
        provider = FakeProvider(
            _make_message(tool_calls=[_make_tool_call("launch_rockets", {})]),
            _make_message("done"),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)
        a.chat("go")
        assert rec.approvals == []
        assert rec.ends[0][1].error == "Error: Unknown tool"

    def test_thinking_text_with_tool_calls(self, tmp_path, monkeypatch):
        rec = Recorder()
        provider = FakeProvider(
            _make_message(
                "Let me look.", tool_calls=[_make_tool_call("list_files", {})]
            ),
            _make_message("done"),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)
        a.chat("look")
        assert rec.thinking == [("Let me look.", None)]
        assert rec.finals == [("done", None)]

    def test_sibling_failure_does_not_stop_batch(self, tmp_path, monkeypatch):
        (tmp_path / "ok.txt").write_text("fine")
        rec = Recorder()
        provider = FakeProvider(
            _make_message(
                tool_calls=[
                    _make_tool_call("read_file", {"file_path": "missing.txt"}, "call_1"),
                    _make_tool_call("read_file", {"file_path": "ok.txt"}, "call_2"),
                ]
            ),
            _make_message("done"),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)
        assert a.chat("read both") is AgentState.COMPLETE
        assert [r.success for _, r in rec.ends] == [False, True]
        assert len(_tool_turns(a)) == 2

    def test_executor_exception_becomes_failure(self, tmp_path, monkeypatch):
        def boom(name, args, ctx=None):
            raise RuntimeError("kaboom")

        rec = Recorder()
        provider = FakeProvider(
            _make_message(tool_calls=[_make_tool_call("list_files", {})]),
            _make_message("recovered"),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)
        monkeypatch.setattr(agent_mod, "execute_tool", boom)

        assert a.chat("go") is AgentState.COMPLETE
        assert rec.ends[0][1].error == "Error: Unexpected tool error"
        assert rec.finals == [("recovered", None)]


# =========================================================================
# Malformed arguments
# =========================================================================


class TestMalformedArguments:
    def test_truncated_json(self, tmp_path, monkeypatch, caplog):
        rec = Recorder()
        provider = FakeProvider(
            _make_message(
                "Reading file",
                tool_calls=[_make_tool_call("read_file", '{ "file_path": "test.js" ')],
            ),
            _make_message("sorry"),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)

        with caplog.at_level(logging.WARNING, logger="agentloop.agent"):
            state = a.chat("read test.js")

        assert state is AgentState.COMPLETE
        assert rec.events == []
        assert rec.thinking == [("Reading file", None)]
        turns = _tool_turns(a)
        assert len(turns) == 1
        assert json.loads(turns[0]["content"])["error"] == MALFORMED_ARGS_ERROR
        assert any("malformed arguments" in r.getMessage() for r in caplog.records)

    def test_null_arguments_mean_no_arguments(self, tmp_path, monkeypatch):
        (tmp_path / "main.py").write_text("")
        rec = Recorder()
        provider = FakeProvider(
            _make_message(tool_calls=[_make_tool_call("list_files", None)]),
            _make_message("done"),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)

        assert a.chat("list") is AgentState.COMPLETE
        assert rec.events[0] == ("start", "list_files", {})
        assert rec.ends[0][1].success
        assert a.messages[2]["tool_calls"][0]["function"]["arguments"] == "{}"
        result = json.loads(_tool_turns(a)[0]["content"])
        assert result["success"] is True
        assert "main.py" in result["content"]


# =========================================================================
# Read-before-edit
# =========================================================================


class TestReadBeforeEdit:
    def test_edit_refused_before_read(self, tmp_path, monkeypatch):
        target = tmp_path / "a.txt"
        target.write_text("hello")
        rec = Recorder()
        provider = FakeProvider(
            _make_message(
                tool_calls=[
                    _make_tool_call(
                        "edit_file", {"file_path": "a.txt", "old_text": "hello", "new_text": "bye"}
                    )
                ]
            ),
            _make_message("done"),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)

        a.chat("edit it")

        assert rec.approvals == []
        assert rec.ends[0][1].error == read_before_edit_error("a.txt")
        assert target.read_text() == "hello"

    def test_edit_after_read_in_earlier_turn(self, tmp_path, monkeypatch):
        target = tmp_path / "a.txt"
        target.write_text("hello")
        rec = Recorder(approval=ApprovalDecision.APPROVED)
        provider = FakeProvider(
            _make_message(tool_calls=[_make_tool_call("read_file", {"file_path": "a.txt"})]),
            _make_message("I read it"),
            _make_message(
                tool_calls=[
                    _make_tool_call(
                        "edit_file",
                        {"file_path": "a.txt", "old_text": "hello", "new_text": "bye"},
                        "call_2",
                    )
                ]
            ),
            _make_message("edited"),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)

        a.chat("read a.txt")
        a.chat("now edit it")

        assert target.read_text() == "bye"
        assert [name for name, _ in rec.approvals] == ["edit_file"]

    def test_clear_history_resets_tracker(self, tmp_path, monkeypatch):
        (tmp_path / "a.txt").write_text("x")
        provider = FakeProvider(
            _make_message(tool_calls=[_make_tool_call("read_file", {"file_path": "a.txt"})]),
            _make_message("read"),
        )
        a = _agent(tmp_path, monkeypatch, provider)
        a.chat("read")
        assert a.read_tracker.has_read("a.txt")

        a.clear_history()

        assert not a.read_tracker.has_read("a.txt")
        assert len(a.messages) == 1
        assert a.messages[0]["role"] == "system"


# =========================================================================
# Iteration ceiling
# =========================================================================


class TestMaxIterations:
    def _looping_provider(self):
        return FakeProvider(
            _make_message(tool_calls=[_make_tool_call("list_files", {})])
        )

    def test_declined_stops_cleanly(self, tmp_path, monkeypatch):
        rec = Recorder(max_iterations=False)
        provider = self._looping_provider()
        a = _agent(tmp_path, monkeypatch, provider, rec)

        state = a.chat("loop forever")

        assert state is AgentState.COMPLETE
        assert rec.max_iter_calls == [MAX_ITERATIONS]
        assert len(provider.calls) == MAX_ITERATIONS

    def test_continue_resets_counter(self, tmp_path, monkeypatch):
        rec = Recorder(max_iterations=[True, False])
        provider = self._looping_provider()
        a = _agent(tmp_path, monkeypatch, provider, rec)

        a.chat("loop forever")

        assert rec.max_iter_calls == [MAX_ITERATIONS, MAX_ITERATIONS]
        assert len(provider.calls) == 2 * MAX_ITERATIONS

    def test_no_callback_stops_at_ceiling(self, tmp_path, monkeypatch):
        provider = self._looping_provider()
        a = _agent(tmp_path, monkeypatch, provider)
        assert a.chat("loop") is AgentState.COMPLETE
        assert len(provider.calls) == MAX_ITERATIONS


# =========================================================================
# Provider errors
# =========================================================================


class TestProviderErrors:
    def test_auth_error_raises(self, tmp_path, monkeypatch):
        provider = FakeProvider(FakeAPIError(401, "Invalid API key", "invalid_api_key"))
        a = _agent(tmp_path, monkeypatch, provider)

        with pytest.raises(ProviderAuthError, match="Invalid API key") as excinfo:
            a.chat("hi")

        assert excinfo.value.status == 401
        assert excinfo.value.code == "invalid_api_key"
        assert a.state is AgentState.FAILED
        assert not a.is_processing

    def test_other_error_ends_failed_with_system_turn(self, tmp_path, monkeypatch):
        provider = FakeProvider(
            FakeAPIError(500, "Internal server error", "internal_error"),
            _make_message("back online"),
        )
        a = _agent(tmp_path, monkeypatch, provider)

        assert a.chat("hi") is AgentState.FAILED
        assert a.messages[-1] == {
            "role": "system",
            "content": "API Error (500): Internal server error (Code: internal_error)",
        }

        assert a.chat("again") is AgentState.COMPLETE

    def test_missing_api_key(self, tmp_path, monkeypatch):
        provider = FakeProvider(_make_message("never"))
        a = _agent(tmp_path, monkeypatch, provider, api_key=None)

        with pytest.raises(ConfigError, match="No API key available"):
            a.chat("hi")
        assert provider.calls == []
        assert not a.is_processing

    def test_env_api_key_used(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "env-api-key")
        provider = FakeProvider(_make_message("ok"))
        a = _agent(tmp_path, monkeypatch, provider, api_key=None)
        a.chat("hi")
        assert provider.api_keys == ["env-api-key"]

    def test_config_api_key_used(self, tmp_path, monkeypatch):
        provider = FakeProvider(_make_message("ok"))
        a = _agent(tmp_path, monkeypatch, provider, api_key=None, config={"api_key": "cfg-key"})
        a.chat("hi")
        assert provider.api_keys == ["cfg-key"]

    def test_lmstudio_needs_no_key(self, tmp_path, monkeypatch):
        provider = FakeProvider(_make_message("ok"))
        a = _agent(tmp_path, monkeypatch, provider, api_key=None, provider="lmstudio")
        assert a.chat("hi") is AgentState.COMPLETE

    def test_set_api_key_after_failure(self, tmp_path, monkeypatch):
        provider = FakeProvider(_make_message("ok"))
        a = _agent(tmp_path, monkeypatch, provider, api_key=None)
        with pytest.raises(ConfigError):
            a.chat("hi")
        a.set_api_key("new-key")
        assert a.chat("hi") is AgentState.COMPLETE
        assert provider.api_keys == ["new-key"]


# =========================================================================
# Interruption
# =========================================================================


class TestInterrupt:
    def test_interrupt_during_provider_call(self, tmp_path, monkeypatch):
        holder = {}

        def interrupted_then_fails(messages):
            holder["agent"].interrupt()
            return RuntimeError("connection reset")

        rec = Recorder()
        provider = FakeProvider(interrupted_then_fails)
        a = _agent(tmp_path, monkeypatch, provider, rec)
        holder["agent"] = a

        state = a.chat("slow question")

        assert state is AgentState.INTERRUPTED
        assert a.state is AgentState.INTERRUPTED
        assert len(_system_notes(a, INTERRUPT_NOTE)) == 1
        assert not any(
            m["role"] == "system" and m["content"].startswith("API Error") for m in a.messages
        )
        assert rec.finals == []

    def test_interrupt_is_idempotent(self, tmp_path, monkeypatch):
        holder = {}

        def interrupt_twice(messages):
            holder["agent"].interrupt()
            holder["agent"].interrupt()
            return _make_message("late answer")

        rec = Recorder()
        a = _agent(tmp_path, monkeypatch, FakeProvider(interrupt_twice), rec)
        holder["agent"] = a

        assert a.chat("q") is AgentState.INTERRUPTED
        assert len(_system_notes(a, INTERRUPT_NOTE)) == 1
        assert rec.finals == []
        assert a.messages[-1]["content"] == INTERRUPT_NOTE

    def test_interrupt_when_idle_is_noop(self, tmp_path, monkeypatch):
        a = _agent(tmp_path, monkeypatch, FakeProvider(_make_message("ok")))
        before = list(a.messages)
        a.interrupt()
        assert a.messages == before
        assert a.state is AgentState.IDLE

    def test_interrupt_during_approval(self, tmp_path, monkeypatch):
        holder = {}

        def approve_then_interrupt(name, args):
            holder["agent"].interrupt()
            return ApprovalDecision.APPROVED

        (tmp_path / "x.txt").write_text("keep")
        rec = Recorder(approval=approve_then_interrupt)
        provider = FakeProvider(
            _make_message(tool_calls=[_make_tool_call("delete_file", {"file_path": "x.txt"})]),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)
        holder["agent"] = a

        assert a.chat("delete") is AgentState.INTERRUPTED
        assert (tmp_path / "x.txt").exists()
        assert rec.ends == []
        assert _tool_turns(a) == []

    @pytest.mark.parametrize(
        "name,args",
        [
            ("execute_command", {"command": "touch ran.txt", "command_type": "bash"}),
            ("list_files", {}),
        ],
    )
    def test_interrupt_from_tool_start_stops_dispatch(self, tmp_path, monkeypatch, name, args):
        rec = Recorder()
        provider = FakeProvider(_make_message(tool_calls=[_make_tool_call(name, args)]))
        a = _agent(tmp_path, monkeypatch, provider)
        callbacks = rec.callbacks()

        def start_then_interrupt(tool, tool_args):
            rec.events.append(("start", tool, tool_args))
            a.interrupt()

        callbacks.on_tool_start = start_then_interrupt
        a.set_tool_callbacks(callbacks)

        assert a.chat("go") is AgentState.INTERRUPTED
        assert rec.approvals == []
        assert rec.ends == []
        assert _tool_turns(a) == []
        assert not (tmp_path / "ran.txt").exists()
        assert len(_system_notes(a, INTERRUPT_NOTE)) == 1

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")
    def test_interrupt_kills_running_command(self, tmp_path, monkeypatch):
        holder = {}

        def approve_and_schedule_interrupt(name, args):
            threading.Timer(0.5, holder["agent"].interrupt).start()
            return ApprovalDecision.APPROVED

        rec = Recorder(approval=approve_and_schedule_interrupt)
        provider = FakeProvider(
            _make_message(
                tool_calls=[
                    _make_tool_call(
                        "execute_command", {"command": "sleep 30", "command_type": "bash"}
                    )
                ]
            ),
        )
        a = _agent(tmp_path, monkeypatch, provider, rec)
        holder["agent"] = a

        t0 = time.monotonic()
        state = a.chat("run it")

        assert state is AgentState.INTERRUPTED
        assert time.monotonic() - t0 < 15
        assert len(_system_notes(a, INTERRUPT_NOTE)) == 1

    def test_dangling_tool_calls_repaired_before_next_turn(self, tmp_path, monkeypatch):
        provider = FakeProvider(_make_message("ok"))
        a = _agent(tmp_path, monkeypatch, provider)
        a.messages.extend(
            [
                {"role": "user", "content": "do two things"},
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": "call_a",
                            "type": "function",
                            "function": {"name": "list_files", "arguments": "{}"},
                        },
                        {
                            "id": "call_b",
                            "type": "function",
                            "function": {"name": "list_files", "arguments": "{}"},
                        },
                    ],
                },
                {"role": "tool", "tool_call_id": "call_a", "name": "list_files", "content": "{}"},
                {"role": "system", "content": INTERRUPT_NOTE},
            ]
        )

        a.chat("next")

        sent = provider.calls[0]
        roles = [m["role"] for m in sent]
        assert roles == ["system", "user", "assistant", "tool", "tool", "system", "user"]
        repaired = sent[4]
        assert repaired["tool_call_id"] == "call_b"
        assert json.loads(repaired["content"])["error"] == INTERRUPTED_TOOL_ERROR

    def test_second_chat_while_processing_raises(self, tmp_path, monkeypatch):
        holder = {}
        errors = []

        def reenter(messages):
            try:
                holder["agent"].chat("again")
            except AgentError as exc:
                errors.append(str(exc))
            return _make_message("first done")

        a = _agent(tmp_path, monkeypatch, FakeProvider(reenter))
        holder["agent"] = a

        assert a.chat("first") is AgentState.COMPLETE
        assert errors == ["A request is already in progress"]


# =========================================================================
# Construction and configuration
# =========================================================================


class TestConfiguration:
    def test_create_prefers_config_model(self, tmp_path):
        a = Agent.create(
            "fallback-model", config={"model": "configured-model"}, project_root=tmp_path
        )
        assert a.get_current_model() == "configured-model"

    def test_create_without_config(self, tmp_path):
        a = Agent.create("fallback-model", project_root=tmp_path)
        assert a.get_current_model() == "fallback-model"

    def test_set_model_rebuilds_system_message(self, tmp_path):
        a = Agent("first-model", project_root=tmp_path)
        a.set_model("second-model")
        assert a.get_current_model() == "second-model"
        assert "second-model" in a.messages[0]["content"]

    def test_estimate_context_tokens(self, tmp_path):
        a = Agent("m", project_root=tmp_path)
        before = a.estimate_context_tokens()
        a.messages.append({"role": "user", "content": "a longer message " * 20})
        assert a.estimate_context_tokens() > before

    def test_debug_log_file(self, tmp_path):
        a = Agent("m", project_root=tmp_path, debug=True)
        pkg_logger = logging.getLogger("agentloop")
        try:
            assert (tmp_path / "debug-agent.log").exists()
            assert a.debug
        finally:
            for handler in list(pkg_logger.handlers):
                if isinstance(handler, logging.FileHandler):
                    pkg_logger.removeHandler(handler)
                    handler.close()
            pkg_logger.setLevel(logging.NOTSET)
