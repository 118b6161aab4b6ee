"""Public library API for ollamacode: Session class and Result dataclass."""

from dataclasses import dataclass

from .config import (
    DEFAULT_ALLOWED_COMMANDS,
    DEFAULT_HOST,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_TEMPERATURE,
    Settings,
    _validate_config,
)
from .report import ReportCollector
from .tools import ConfirmFn, Dispatcher


@dataclass
class Result:
    """Result of a session run."""

    answer: str | None
    exhausted: bool
    iterations: int
    report: dict | None


class Session:
    """Programmatic interface to the ollamacode agent loop.

    Settings are held in a live `Settings` object; changing
    ``session.settings.safe_mode`` between runs takes effect on the next
    tool call. Each run() starts from a fresh prompt.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        host: str = DEFAULT_HOST,
        model: str = DEFAULT_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        safe_mode: bool = True,
        auto_approve: bool = False,
        allowed_commands: list[str] | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        request_timeout: int = DEFAULT_REQUEST_TIMEOUT,
        confirm: ConfirmFn | None = None,
        verbose: bool = False,
    ):
        if allowed_commands is None:
            allowed_commands = list(DEFAULT_ALLOWED_COMMANDS)
        values = dict(
            host=host,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            safe_mode=safe_mode,
            auto_approve=auto_approve,
            allowed_commands=list(allowed_commands),
            max_iterations=max_iterations,
            request_timeout=request_timeout,
        )
        _validate_config(values, "Session")

        self.base_dir = base_dir
        self.verbose = verbose
        self.settings = Settings(**values)
        self.settings.host = self.settings.host.rstrip("/")
        self.dispatcher = Dispatcher(
            self.settings, confirm=confirm, base_dir=base_dir, verbose=verbose
        )

    def run(self, question: str, *, report: bool = False) -> Result:
        """Run one question to completion. Each call is independent."""
        from .agent import build_prompt, run_agent_loop

        collector = ReportCollector()
        answer, exhausted = run_agent_loop(
            build_prompt(question, self.base_dir),
            settings=self.settings,
            dispatcher=self.dispatcher,
            verbose=self.verbose,
            report=collector,
        )

        report_dict = None
        if report:
            report_dict = collector.build_report(
                task=question,
                model=self.settings.model,
                settings=self.settings.as_dict(),
                outcome="exhausted" if exhausted else "success",
                answer=answer,
                exit_code=2 if exhausted else 0,
                iterations=collector.max_iteration_seen,
            )

        return Result(
            answer=answer,
            exhausted=exhausted,
            iterations=collector.max_iteration_seen,
            report=report_dict,
        )
