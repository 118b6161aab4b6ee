"""Capability implementations and the dispatcher that runs them.

Each parsed Invocation is bound to a typed call record, then handed to its
handler. Handlers raise ToolError subclasses for every failure mode; the
Dispatcher turns those into failed Outcomes so that no exception crosses
its boundary.
"""

import dataclasses
import os
import shutil
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from . import fmt
from .config import Settings
from .edit import count_occurrences, replace
from .parser import Invocation
from .report import (
    Cancelled,
    IOFailure,
    MissingParameter,
    NotAllowed,
    NotFound,
    ToolError,
    UnknownCapability,
)

MAX_SEARCH_RESULTS = 100
MAX_COMMAND_OUTPUT = 1 * 1024 * 1024  # 1MB
MAX_PREVIEW_CHARS = 500
BACKUP_SUFFIX = ".bak"

ConfirmFn = Callable[[str, str], bool]


@dataclass
class Outcome:
    """Result of running one invocation."""

    succeeded: bool
    exit_code: int = 0
    output: str = ""
    error: str = ""
    kind: str | None = None
    elapsed: float = 0.0


# -- Typed call records ------------------------------------------------------


@dataclass(frozen=True)
class BashCall:
    command: str
    description: str = "Execute command"


@dataclass(frozen=True)
class ReadCall:
    file_path: str


@dataclass(frozen=True)
class WriteCall:
    file_path: str
    content: str


@dataclass(frozen=True)
class EditCall:
    file_path: str
    old_string: str
    new_string: str


@dataclass(frozen=True)
class GlobCall:
    pattern: str
    path: str = "."


@dataclass(frozen=True)
class GrepCall:
    pattern: str
    path: str = "."
    output_mode: str = "files_with_matches"


CALL_TYPES: dict[str, type] = {
    "Bash": BashCall,
    "Read": ReadCall,
    "Write": WriteCall,
    "Edit": EditCall,
    "Glob": GlobCall,
    "Grep": GrepCall,
}


def bind(invocation: Invocation):
    """Validate an invocation against its capability's required fields.

    Raises:
        UnknownCapability: If the name is not one of CALL_TYPES.
        MissingParameter: If a required field is absent.
    """
    call_type = CALL_TYPES.get(invocation.name)
    if call_type is None:
        raise UnknownCapability(f"Unknown tool: {invocation.name}")

    kwargs: dict[str, str] = {}
    missing: list[str] = []
    for f in dataclasses.fields(call_type):
        value = invocation.parameters.get(f.name)
        if value is not None:
            kwargs[f.name] = value
        elif f.default is dataclasses.MISSING:
            missing.append(f.name)

    if missing:
        names = ", ".join(repr(m) for m in missing)
        plural = "s" if len(missing) > 1 else ""
        raise MissingParameter(f"Missing {names} parameter{plural}")
    return call_type(**kwargs)


# -- Process helpers ---------------------------------------------------------

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
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
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


def _popen_kwargs(cwd: Path, stderr) -> dict:
    kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=stderr,
        stdin=subprocess.DEVNULL,
        cwd=cwd,
    )
    if sys.platform != "win32":
        kwargs["start_new_session"] = True
    return kwargs


def run_shell_command(command: str, cwd: Path) -> tuple[str, int]:
    """Run a shell string, returning (merged stdout+stderr, exit status).

    Raises:
        IOFailure: If the shell cannot be started.
    """
    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    try:
        proc = subprocess.Popen(shell_cmd, **_popen_kwargs(cwd, subprocess.STDOUT))
    except (OSError, ValueError) as e:
        raise IOFailure(f"Failed to execute command: {e}")

    chunks: list[bytes] = []
    total = 0
    truncated = False
    with proc.stdout:
        while True:
            chunk = proc.stdout.read(4096)
            if not chunk:
                break
            if truncated:
                continue  # keep draining to prevent pipe backpressure
            chunk = chunk[: MAX_COMMAND_OUTPUT - total]
            chunks.append(chunk)
            total += len(chunk)
            truncated = total >= MAX_COMMAND_OUTPUT
    proc.wait()

    output = b"".join(chunks).decode("utf-8", errors="replace")
    if truncated:
        output += "\n[output truncated at 1MB]\n"
    return output, proc.returncode


def run_search(argv: list[str], cwd: Path, limit: int = MAX_SEARCH_RESULTS) -> str:
    """Run a search program and keep at most `limit` lines of its stdout.

    stderr is discarded. The process is killed once the limit is reached.

    Raises:
        IOFailure: If the program cannot be started.
    """
    try:
        proc = subprocess.Popen(argv, **_popen_kwargs(cwd, subprocess.DEVNULL))
    except (OSError, ValueError) as e:
        raise IOFailure(f"Failed to run {argv[0]}: {e}")

    lines: list[str] = []
    limit_hit = False
    with proc.stdout:
        for raw in proc.stdout:
            lines.append(raw.decode("utf-8", errors="replace"))
            if len(lines) >= limit:
                limit_hit = True
                break
    if limit_hit:
        _kill_process_tree(proc)
    else:
        proc.wait()
    return "".join(lines)


def _atomic_write(path: Path, data: bytes) -> None:
    """Write via a sibling temp file and rename it over the target.

    Keeps the target's permission bits when it already exists.

    Raises:
        IOFailure: If any step fails. The target is left untouched.
    """
    try:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    except (OSError, ValueError) as exc:
        raise IOFailure(f"Failed to write file: {exc}")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        if path.exists():
            shutil.copymode(path, tmp)
        else:
            os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except (OSError, ValueError) as exc:
        tmp.unlink(missing_ok=True)
        raise IOFailure(f"Failed to write file: {exc}")


# -- Dispatcher --------------------------------------------------------------


class Dispatcher:
    """Runs invocations against the local machine under the session policy.

    The policy is re-read from `settings` at every decision point, so a
    ``safe off`` typed mid-session applies to the very next call.
    """

    def __init__(
        self,
        settings: Settings,
        confirm: ConfirmFn | None = None,
        base_dir: str = ".",
        verbose: bool = True,
    ):
        self.settings = settings
        self.confirm = confirm if confirm is not None else fmt.confirm
        self.base_dir = Path(base_dir)
        self.verbose = verbose
        self._handlers = {
            BashCall: self._bash,
            ReadCall: self._read,
            WriteCall: self._write,
            EditCall: self._edit,
            GlobCall: self._glob,
            GrepCall: self._grep,
        }

    def execute(self, invocation: Invocation) -> Outcome:
        t0 = time.monotonic()
        try:
            call = bind(invocation)
            outcome = self._handlers[type(call)](call)
        except ToolError as exc:
            outcome = Outcome(
                succeeded=False, exit_code=-1, error=str(exc), kind=exc.kind
            )
        outcome.elapsed = time.monotonic() - t0

        if self.verbose:
            if outcome.succeeded:
                preview = outcome.output[:MAX_PREVIEW_CHARS]
                fmt.tool_result(invocation.name, outcome.elapsed, preview)
            else:
                fmt.tool_error(invocation.name, outcome.error)
        return outcome

    def execute_all(self, invocations: list[Invocation]) -> list[Outcome]:
        """Run invocations one after another, in order."""
        outcomes: list[Outcome] = []
        total = len(invocations)
        for i, invocation in enumerate(invocations, start=1):
            if self.verbose:
                fmt.tool_call(i, total, invocation.name)
            outcomes.append(self.execute(invocation))
        return outcomes

    # -- Gates --

    def _require_confirmation(self, name: str, description: str) -> None:
        if self.settings.policy().auto_approve:
            return
        if not self.confirm(name, description):
            raise Cancelled("Cancelled by user")

    def _resolve(self, file_path: str) -> Path:
        path = Path(file_path)
        if path.is_absolute():
            return path
        return self.base_dir / path

    def _detail(self, label: str, value: str) -> None:
        if self.verbose:
            fmt.tool_detail(label, value)

    # -- Handlers --

    def _bash(self, call: BashCall) -> Outcome:
        self._detail("Description", call.description)
        self._detail("Command", call.command)

        if not self.settings.policy().command_allowed(call.command):
            raise NotAllowed("Command not allowed in safe mode")

        self._require_confirmation("Bash", call.description)

        output, exit_code = run_shell_command(call.command, self.base_dir)
        if exit_code == 0:
            return Outcome(succeeded=True, exit_code=0, output=output)
        return Outcome(
            succeeded=False,
            exit_code=exit_code,
            output=output,
            error=f"Failed (exit code: {exit_code})",
        )

    def _read(self, call: ReadCall) -> Outcome:
        self._detail("File", call.file_path)
        resolved = self._resolve(call.file_path)
        if not resolved.exists():
            raise NotFound(f"File not found: {call.file_path}")

        try:
            text = resolved.read_text(encoding="utf-8", errors="replace")
        except (OSError, ValueError) as exc:
            raise IOFailure(f"Failed to read file or file is empty: {exc}")
        if not text:
            raise IOFailure("Failed to read file or file is empty")
        return Outcome(succeeded=True, output=text)

    def _write(self, call: WriteCall) -> Outcome:
        self._detail("File", call.file_path)
        resolved = self._resolve(call.file_path)

        if resolved.exists():
            self._require_confirmation("Write", "File exists. Overwrite?")

        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
        except (OSError, ValueError) as exc:
            raise IOFailure(f"Failed to create directory: {resolved.parent}: {exc}")

        _atomic_write(resolved, call.content.encode("utf-8"))

        lines = call.content.count("\n") + 1
        self._detail("Lines written", str(lines))
        return Outcome(succeeded=True, output="File written successfully")

    def _edit(self, call: EditCall) -> Outcome:
        self._detail("File", call.file_path)
        resolved = self._resolve(call.file_path)
        if not resolved.exists():
            raise NotFound(f"File not found: {call.file_path}")

        try:
            raw = resolved.read_bytes()
            content = raw.decode("utf-8")
        except (OSError, ValueError) as exc:
            raise IOFailure(f"Failed to read file: {exc}")
        if not content:
            raise IOFailure("Failed to read file")

        count = count_occurrences(content, call.old_string)
        if count == 0:
            raise NotFound("String not found in file")
        self._detail("Occurrences", str(count))

        self._require_confirmation("Edit", f"Apply changes? ({count} occurrence(s))")

        backup = resolved.with_name(resolved.name + BACKUP_SUFFIX)
        try:
            backup.write_bytes(raw)
        except (OSError, ValueError) as exc:
            raise IOFailure(f"Failed to write backup {backup}: {exc}")

        new_content, replaced = replace(content, call.old_string, call.new_string)
        _atomic_write(resolved, new_content.encode("utf-8"))

        self._detail("Backup saved", str(backup))
        return Outcome(
            succeeded=True,
            output=(
                f"File edited successfully ({replaced} occurrence(s) replaced, "
                f"backup saved to {call.file_path}{BACKUP_SUFFIX})"
            ),
        )

    def _glob(self, call: GlobCall) -> Outcome:
        self._detail("Pattern", call.pattern)
        self._detail("Path", call.path)
        # find takes a leading "-" as an expression, not a starting point
        start = call.path
        if start.startswith("-"):
            start = os.path.join(".", start)
        output = run_search(
            ["find", start, "-name", call.pattern, "-type", "f"], self.base_dir
        )
        return Outcome(succeeded=True, output=output)

    def _grep(self, call: GrepCall) -> Outcome:
        self._detail("Pattern", call.pattern)
        self._detail("Path", call.path)
        self._detail("Mode", call.output_mode)
        flag = "-n" if call.output_mode == "content" else "-l"
        output = run_search(
            ["grep", "-r", flag, "-e", call.pattern, "--", call.path], self.base_dir
        )
        return Outcome(succeeded=True, output=output)
