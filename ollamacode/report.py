"""Error types and JSON report generation for agent runs."""

import json
from datetime import datetime, timezone
from pathlib import Path

REPORT_VERSION = 1


class AgentError(Exception):
    """Runtime failure reported to the user; exit code 1 in single-prompt mode."""


class ConfigError(AgentError):
    """Unreadable or ill-typed config file, or an invalid Session argument."""


class UpstreamError(AgentError):
    """Raised when the inference service fails. Fatal for the current turn."""


class ToolError(Exception):
    """Base class for capability failures.

    Never escapes the dispatcher: it is folded into an Outcome there.
    """

    kind = "ToolError"


class MissingParameter(ToolError):
    kind = "MissingParameter"


class NotAllowed(ToolError):
    kind = "NotAllowed"


class Cancelled(ToolError):
    kind = "Cancelled"


class NotFound(ToolError):
    kind = "NotFound"


class IOFailure(ToolError):
    kind = "IOFailure"


class UnknownCapability(ToolError):
    kind = "UnknownCapability"


class ReportCollector:
    """Timeline of model and tool calls for one question, dumped as JSON.

    Counters are derived from the timeline except the per-tool tally.
    """

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self._last_report: dict | None = None

    @property
    def llm_calls(self) -> int:
        return sum(1 for e in self.events if e["type"] == "llm_call")

    @property
    def total_llm_time(self) -> float:
        return sum(e["duration_s"] for e in self.events if e["type"] == "llm_call")

    @property
    def total_tool_time(self) -> float:
        return sum(e["duration_s"] for e in self.events if e["type"] == "tool_call")

    @property
    def max_iteration_seen(self) -> int:
        return max((e["iteration"] for e in self.events), default=0)

    def record_llm_call(self, iteration: int, duration: float, token_est: int, *, failed: bool = False):
        self.events.append(
            dict(
                iteration=iteration,
                type="llm_call",
                duration_s=round(duration, 3),
                prompt_tokens_est=token_est,
                failed=failed,
            )
        )

    def record_tool_call(
        self,
        iteration: int,
        name: str,
        parameters: dict,
        succeeded: bool,
        exit_code: int,
        duration: float,
        output_length: int,
        error: str | None = None,
    ):
        tally = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        tally["succeeded" if succeeded else "failed"] += 1

        event = dict(
            iteration=iteration,
            type="tool_call",
            name=name,
            parameters=parameters,
            succeeded=succeeded,
            exit_code=exit_code,
            duration_s=round(duration, 3),
            output_length=output_length,
        )
        if error:
            event["error"] = error
        self.events.append(event)

    def _stats(self, iterations: int) -> dict:
        ok = sum(t["succeeded"] for t in self.tool_stats.values())
        bad = sum(t["failed"] for t in self.tool_stats.values())
        return {
            "iterations": iterations,
            "tool_calls_total": ok + bad,
            "tool_calls_succeeded": ok,
            "tool_calls_failed": bad,
            "tool_calls_by_name": {k: dict(v) for k, v in self.tool_stats.items()},
            "llm_calls": self.llm_calls,
            "total_llm_time_s": round(self.total_llm_time, 3),
            "total_tool_time_s": round(self.total_tool_time, 3),
        }

    def build_report(
        self,
        *,
        task: str,
        model: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        iterations: int,
        error_message: str | None = None,
    ) -> dict:
        """Assemble the report dict; outcome is success, exhausted or error."""
        result = {"outcome": outcome, "answer": answer, "exit_code": exit_code}
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": REPORT_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "settings": settings,
            "result": result,
            "stats": self._stats(iterations),
            "timeline": list(self.events),
        }

    def finalize(self, **fields) -> dict:
        """Build the report from build_report() fields and keep it for write()."""
        self._last_report = self.build_report(**fields)
        return self._last_report

    def write(self, path: str):
        if self._last_report is None:
            raise RuntimeError("finalize() must be called before write()")
        Path(path).write_text(
            json.dumps(self._last_report, indent=2) + "\n", encoding="utf-8"
        )
