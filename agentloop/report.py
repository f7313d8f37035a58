"""Error taxonomy and usage accounting for agent sessions."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, missing API key, bad config file)."""


class ProviderAuthError(AgentError):
    """Raised when the model provider rejects the credential (HTTP 401 class)."""

    def __init__(self, message: str, status: int | None = 401, code: str | None = None):
        super().__init__(message)
        self.status = status
        self.code = code


class UsageCollector:
    """Accumulates provider usage and tool outcomes across a session."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.llm_calls = 0
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.total_tokens = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.approvals_requested = 0
        self.rejections = 0

    def record_llm_call(self, duration: float, usage: dict | None = None):
        self.llm_calls += 1
        self.total_llm_time += duration
        event: dict = {"type": "llm_call", "duration_s": round(duration, 3)}
        if usage:
            self.prompt_tokens += usage.get("prompt_tokens", 0) or 0
            self.completion_tokens += usage.get("completion_tokens", 0) or 0
            self.total_tokens += usage.get("total_tokens", 0) or 0
            event["usage"] = dict(usage)
        self.events.append(event)

    def record_tool_call(
        self,
        name: str,
        succeeded: bool,
        duration: float,
        *,
        user_rejected: bool = False,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(
            name, {"succeeded": 0, "failed": 0, "rejected": 0}
        )
        if user_rejected:
            stats["rejected"] += 1
            self.rejections += 1
        elif succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "type": "tool_call",
            "name": name,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
        }
        if user_rejected:
            event["user_rejected"] = True
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_approval_request(self, name: str):
        self.approvals_requested += 1
        self.events.append({"type": "approval_request", "name": name})

    def summary_line(self) -> str | None:
        """One-line usage summary, or None before the first provider call."""
        if self.llm_calls == 0:
            return None
        calls = sum(sum(s.values()) for s in self.tool_stats.values())
        return (
            f"usage: {self.llm_calls} API calls, {self.total_tokens} tokens "
            f"({self.prompt_tokens} prompt / {self.completion_tokens} completion), "
            f"{calls} tool calls"
        )

    def build_report(self, *, model: str, provider: str, outcome: str) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())
        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model": model,
            "provider": provider,
            "outcome": outcome,
            "stats": {
                "llm_calls": self.llm_calls,
                "prompt_tokens": self.prompt_tokens,
                "completion_tokens": self.completion_tokens,
                "total_tokens": self.total_tokens,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_rejected": self.rejections,
                "tool_calls_by_name": dict(self.tool_stats),
                "approvals_requested": self.approvals_requested,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def write(self, path: str, report: dict):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)
            f.write("\n")
