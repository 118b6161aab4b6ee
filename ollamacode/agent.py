import argparse
import contextlib
import json
import os
import platform
import sys
import time
import urllib.error
import urllib.request
from datetime import datetime
from importlib import metadata
from pathlib import Path

import tiktoken

from . import fmt
from .config import (
    _UNSET,
    DEFAULT_REQUEST_TIMEOUT,
    Settings,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
    settings_from_args,
)
from .parser import Invocation, parse
from .report import AgentError, ConfigError, ReportCollector, UpstreamError
from .tools import Dispatcher, Outcome

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"

FOLLOWUP_HEADER = "Tool execution results:\n\n"
FOLLOWUP_INSTRUCTION = (
    "Based on these results, provide your analysis or next steps. "
    "Only use more tools if absolutely necessary."
)

_encoder = tiktoken.get_encoding("cl100k_base")


def estimate_tokens(text: str) -> int:
    """Count prompt tokens using tiktoken.

    Ollama models use their own tokenizers, so this is only an estimate.
    """
    return len(_encoder.encode(text, disallowed_special=()))


# ---------------------------------------------------------------------------
# Inference service
# ---------------------------------------------------------------------------


def list_models(host: str, timeout: float = 10) -> list[str]:
    """Return the names of the models installed on the Ollama server."""
    url = f"{host}/api/tags"
    try:
        req = urllib.request.Request(url)
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            data = json.loads(resp.read().decode())
    except (urllib.error.URLError, OSError) as e:
        raise UpstreamError(f"could not connect to Ollama at {host}: {e}")
    except json.JSONDecodeError as e:
        raise UpstreamError(f"invalid JSON from {url}: {e}")

    return [m["name"] for m in data.get("models", []) if m.get("name")]


def check_connection(host: str) -> bool:
    try:
        list_models(host, timeout=5)
    except UpstreamError:
        return False
    return True


def call_llm(
    host: str,
    model: str,
    prompt: str,
    temperature: float,
    max_tokens: int,
    verbose: bool,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> str:
    """Send one prompt to Ollama through LiteLLM and return the reply text."""
    import litellm

    litellm.suppress_debug_info = True

    model_str = f"ollama/{model}"
    if verbose:
        fmt.model_info(
            f"Calling model {model_str} with temperature={temperature}, "
            f"max_tokens={max_tokens}"
        )

    try:
        response = litellm.completion(
            model=model_str,
            messages=[{"role": "user", "content": prompt}],
            api_base=host,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    except Exception as e:
        raise UpstreamError(f"LLM call failed: {e}")

    return response.choices[0].message.content or ""


# ---------------------------------------------------------------------------
# Prompt construction
# ---------------------------------------------------------------------------


def build_prompt(user_message: str, base_dir: str = ".") -> str:
    """Compose the first prompt of a turn: instructions, environment, request."""
    system_content = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()

    env_lines = [f"- Working Directory: {Path(base_dir).resolve()}"]
    user = os.environ.get("USER") or os.environ.get("USERNAME")
    if user:
        env_lines.append(f"- User: {user}")
    env_lines.append(f"- Date: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    env_lines.append(f"- OS: {platform.system() or 'unknown'}")

    return (
        f"{system_content}\n\n"
        "Current Environment:\n"
        + "\n".join(env_lines)
        + f"\n\nUser Request: {user_message}"
    )


def build_followup(invocations: list[Invocation], outcomes: list[Outcome]) -> str:
    """Summarize a tool batch as the next prompt for the model."""
    parts = [FOLLOWUP_HEADER]
    for invocation, outcome in zip(invocations, outcomes):
        block = (
            f"Tool: {invocation.name}\n"
            f"Exit Code: {outcome.exit_code}\n"
            f"Success: {'true' if outcome.succeeded else 'false'}\n"
        )
        if outcome.error:
            block += f"Error: {outcome.error}\n"
        if outcome.output:
            block += f"Output:\n{outcome.output}\n"
        parts.append(block + "\n")
    parts.append(FOLLOWUP_INSTRUCTION)
    return "".join(parts)


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


def run_agent_loop(
    prompt: str,
    *,
    settings: Settings,
    dispatcher: Dispatcher,
    verbose: bool,
    report: ReportCollector | None = None,
) -> tuple[str | None, bool]:
    """Run the tool-calling loop until the model stops asking for tools.

    Each reply's tool results become the next prompt; nothing else carries
    over between iterations. At most settings.max_iterations model calls
    are made.

    Narration that accompanies tool calls is printed to stdout as soon as
    it arrives, in quiet mode too.

    Returns (final_answer, exhausted). final_answer is the narration of
    the reply that asked for no tools, or None when the iteration cap
    stopped the loop.

    Raises:
        UpstreamError: If the inference service fails. Never retried.
    """
    iteration = 0

    while iteration < settings.max_iterations:
        iteration += 1
        token_est = estimate_tokens(prompt)
        if verbose:
            fmt.iteration_header(iteration, settings.max_iterations, token_est)

        spinner = fmt.llm_spinner() if verbose else contextlib.nullcontext()
        t0 = time.monotonic()
        try:
            with spinner:
                reply = call_llm(
                    settings.host,
                    settings.model,
                    prompt,
                    settings.temperature,
                    settings.max_tokens,
                    verbose,
                    timeout=settings.request_timeout,
                )
        except UpstreamError:
            if report:
                report.record_llm_call(
                    iteration, time.monotonic() - t0, token_est, failed=True
                )
            raise
        elapsed = time.monotonic() - t0
        if verbose:
            fmt.llm_timing(elapsed)
        if report:
            report.record_llm_call(iteration, elapsed, token_est)

        narration, invocations = parse(reply)

        if not invocations:
            if verbose:
                fmt.completion(iteration, "ok")
            return narration, False

        if narration:
            print(narration, flush=True)

        if verbose:
            fmt.tool_batch(len(invocations))
        outcomes = dispatcher.execute_all(invocations)

        if report:
            for invocation, outcome in zip(invocations, outcomes):
                report.record_tool_call(
                    iteration,
                    invocation.name,
                    dict(invocation.parameters),
                    outcome.succeeded,
                    outcome.exit_code,
                    outcome.elapsed,
                    len(outcome.output),
                    error=outcome.error or None,
                )

        prompt = build_followup(invocations, outcomes)

    if verbose:
        fmt.completion(iteration, "max_iterations")
    return None, True


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="ollamacode",
        usage="%(prog)s [options] [prompt ...]",
        description="Interactive CLI for Ollama with tool calling: run commands, "
        "read, write and edit files, and search code from a local model.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "prompt",
        nargs="*",
        help="Task for the model. Without one, start an interactive session.",
    )
    parser.add_argument(
        "-m",
        "--model",
        default=_UNSET,
        help="Ollama model to use (default: llama3).",
    )
    parser.add_argument(
        "-t",
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature, 0.0-2.0 (default: 0.7).",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=_UNSET,
        help="Maximum tokens per model reply (default: 4096).",
    )
    parser.add_argument(
        "--host",
        default=_UNSET,
        help="Ollama server URL (default: $OLLAMA_HOST or http://localhost:11434).",
    )
    parser.add_argument(
        "--request-timeout",
        type=int,
        default=_UNSET,
        help="Seconds to wait for a model reply (default: 300).",
    )
    parser.add_argument(
        "-a",
        "--auto-approve",
        action="store_true",
        default=_UNSET,
        help="Run tools without asking for confirmation.",
    )
    parser.add_argument(
        "--unsafe",
        dest="safe_mode",
        action="store_false",
        default=_UNSET,
        help="Disable safe mode (allow commands outside the allow-list).",
    )
    parser.add_argument(
        "--allowed-commands",
        default=_UNSET,
        help='Comma-separated safe-mode allow-list (e.g. "ls,git,grep").',
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum model calls per question (default: 10).",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Directory that relative paths and commands use (default: current directory).",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON report to FILE. Single-prompt mode only.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, write <base-dir>/ollamacode.toml instead of the global file.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def _init_config(args) -> int:
    if args.project:
        path = Path(args.base_dir) / "ollamacode.toml"
    else:
        path = global_config_dir() / "config.toml"
    if path.exists():
        fmt.error(f"{path} already exists, not overwriting")
        return 1
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(generate_config(project=args.project), encoding="utf-8")
    except OSError as e:
        fmt.error(f"failed to write {path}: {e}")
        return 1
    fmt.success(f"Wrote {path}")
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("ollamacode")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.project and not args.init_config:
        parser.error("--project requires --init-config")
    if args.init_config:
        sys.exit(_init_config(args))

    args.question = " ".join(args.prompt).strip()
    if args.report and not args.question:
        parser.error("--report requires a prompt (not available in interactive mode)")

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    if not 0.0 <= args.temperature <= 2.0:
        parser.error("--temperature must be between 0.0 and 2.0")
    for dest in ("max_tokens", "max_iterations", "request_timeout"):
        if getattr(args, dest) < 1:
            parser.error(f"--{dest.replace('_', '-')} must be a positive integer")

    fmt.init(color=args.color, no_color=args.no_color)

    settings = settings_from_args(args)
    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.question,
            model=settings.model,
            settings=settings.as_dict(),
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            iterations=report.max_iteration_seen,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        _run_main(args, settings, report, _write_report)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)


def _run_main(args, settings, report, _write_report):
    if not check_connection(settings.host):
        raise UpstreamError(
            f"Failed to connect to Ollama at {settings.host}. "
            "Make sure Ollama is running with: ollama serve"
        )

    dispatcher = Dispatcher(settings, base_dir=args.base_dir, verbose=args.verbose)

    if not args.question:
        repl_loop(
            settings,
            dispatcher,
            base_dir=args.base_dir,
            verbose=args.verbose,
        )
        return

    start = time.monotonic()
    answer, exhausted = run_agent_loop(
        build_prompt(args.question, args.base_dir),
        settings=settings,
        dispatcher=dispatcher,
        verbose=args.verbose,
        report=report,
    )
    if answer:
        print(answer)
    if args.verbose:
        fmt.duration(time.monotonic() - start)

    _write_report(
        "exhausted" if exhausted else "success",
        answer=answer,
        exit_code=2 if exhausted else 0,
    )
    if exhausted:
        fmt.warning("maximum tool calling iterations reached, agent stopped.")
        sys.exit(2)


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  help               Show this help message\n"
        "  models             List models installed on the Ollama server\n"
        "  use MODEL          Switch to a different model\n"
        "  temp NUM           Set the sampling temperature (0.0-2.0)\n"
        "  safe on|off        Toggle safe mode (command allow-list)\n"
        "  auto on|off        Toggle auto-approve for tool execution\n"
        "  config             Show the current configuration\n"
        "  clear              Clear the screen\n"
        "  exit, quit         Exit ollamacode\n"
        "Anything else is sent to the model."
    )


def _repl_config(settings: Settings, base_dir: str) -> None:
    fmt.settings_table(
        [
            ("Model", settings.model),
            ("Host", settings.host),
            ("Temperature", f"{settings.temperature:g}"),
            ("Max Tokens", str(settings.max_tokens)),
            ("Safe Mode", str(settings.safe_mode).lower()),
            ("Auto Approve", str(settings.auto_approve).lower()),
            ("Max Iterations", str(settings.max_iterations)),
            ("Working Dir", str(Path(base_dir).resolve())),
        ]
    )


def _repl_models(settings: Settings) -> None:
    try:
        models = list_models(settings.host)
    except UpstreamError as e:
        fmt.error(str(e))
        return
    fmt.model_list(models)


def _repl_use(arg: str, settings: Settings) -> None:
    model = arg.strip()
    if not model:
        fmt.warning("use requires a model name")
        return
    settings.model = model
    fmt.success(f"Switched to model: {model}")


def _repl_temp(arg: str, settings: Settings) -> None:
    arg = arg.strip()
    try:
        value = float(arg)
    except ValueError:
        fmt.warning(f"invalid number: {arg}")
        return
    if not 0.0 <= value <= 2.0:
        fmt.warning("temperature must be between 0.0 and 2.0")
        return
    settings.temperature = value
    fmt.success(f"Temperature set to: {value:g}")


def _repl_toggle(cmd: str, arg: str, settings: Settings) -> None:
    """Handle `safe on|off` and `auto on|off`."""
    state = arg.strip().lower()
    if state not in ("on", "off"):
        fmt.warning(f"usage: {cmd} on|off")
        return
    enabled = state == "on"
    if cmd == "safe":
        settings.safe_mode = enabled
        if enabled:
            fmt.success("Safe mode enabled")
        else:
            fmt.warning("Safe mode disabled")
    else:
        settings.auto_approve = enabled
        if enabled:
            fmt.warning("Auto-approve enabled")
        else:
            fmt.success("Auto-approve disabled")


def _repl_clear() -> None:
    from prompt_toolkit.shortcuts import clear

    clear()
    fmt.repl_banner()


def _make_history(history_path: Path | None):
    from prompt_toolkit.history import FileHistory, InMemoryHistory

    if history_path is None:
        history_path = global_config_dir() / "history.txt"
    try:
        history_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        fmt.warning(f"cannot create {history_path.parent}, history disabled")
        return InMemoryHistory()
    return FileHistory(str(history_path))


def repl_loop(
    settings: Settings,
    dispatcher: Dispatcher,
    *,
    base_dir: str = ".",
    verbose: bool = True,
    history_path: Path | None = None,
) -> None:
    """Interactive read-eval-print loop.

    Each question starts a fresh agent loop; model replies do not carry
    over between questions.
    """
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText

    session = PromptSession(
        history=_make_history(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansicyan", "You> ")])

    fmt.repl_banner()
    _repl_config(settings, base_dir)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        if line in ("exit", "quit"):
            fmt.success("Goodbye!")
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if line == "help":
            _repl_help()
            continue
        elif line == "models":
            _repl_models(settings)
            continue
        elif line == "config":
            _repl_config(settings, base_dir)
            continue
        elif line == "clear":
            _repl_clear()
            continue
        elif cmd == "use" and cmd_arg:
            _repl_use(cmd_arg, settings)
            continue
        elif cmd == "temp" and cmd_arg:
            _repl_temp(cmd_arg, settings)
            continue
        elif cmd in ("safe", "auto") and cmd_arg:
            _repl_toggle(cmd, cmd_arg, settings)
            continue

        start = time.monotonic()
        try:
            answer, exhausted = run_agent_loop(
                build_prompt(line, base_dir),
                settings=settings,
                dispatcher=dispatcher,
                verbose=verbose,
            )
        except KeyboardInterrupt:
            fmt.warning("interrupted, question aborted.")
            continue
        except UpstreamError as e:
            fmt.error(f"Failed to get AI response: {e}")
            continue

        if answer:
            print(answer)
        if exhausted:
            fmt.warning("maximum tool calling iterations reached for this question.")
        if verbose:
            fmt.duration(time.monotonic() - start)


if __name__ == "__main__":
    main()
