"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Iteration structure -----------------------------------------------------


def iteration_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Iteration {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float) -> None:
    _console.print(Text(f"  LLM responded in {elapsed:.1f}s", style="green"))


def llm_spinner(label: str = "Thinking..."):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def completion(iterations: int, status: str) -> None:
    if status == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {iterations} iterations", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Agent finished: {iterations} iterations, exit={status}",
                style="bold red",
            )
        )


def duration(seconds: float) -> None:
    _console.print(Rule(style="magenta"))
    _console.print(Text(f"  ⏱ Duration: {seconds:.0f}s", style="magenta"))


# -- Tool calls --------------------------------------------------------------


def tool_batch(count: int) -> None:
    _console.print(Text(f"  Executing {count} tool(s)...", style="bold cyan"))


def tool_call(index: int, total: int, name: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(f"Tool {index}/{total}: ", style="magenta")
    header.append(name, style="bold magenta")
    _console.print(header)


def tool_detail(label: str, value: str) -> None:
    lines = value.splitlines() or [""]
    _console.print(Text(f"    {label}: {lines[0]}", style="cyan"))
    for line in lines[1:]:
        _console.print(Text(f"      {line}", style="cyan"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        for line in preview.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def confirm(name: str, description: str) -> bool:
    """Ask a yes/no question on the terminal before running a capability."""
    question = f"  [yellow]Execute {escape(name)}?[/yellow] {escape(description)}"
    try:
        return Confirm.ask(question, console=_console, default=False)
    except EOFError:
        # stdin exhausted or closed
        _console.print()
        return False


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def success(msg: str) -> None:
    _console.print(Text(f"  ✓ {msg}", style="green"))


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


def settings_table(rows: list[tuple[str, str]]) -> None:
    _console.print(Text("Current Configuration:", style="bold cyan"))
    width = max((len(label) for label, _ in rows), default=0) + 1
    for label, value in rows:
        line = Text(f"  {label + ':':<{width}} ")
        line.append(value, style="green" if label == "Model" else "")
        _console.print(line)


def model_list(models: list[str]) -> None:
    _console.print(Text("Available Models:", style="bold cyan"))
    if not models:
        warning("No models found. Make sure Ollama is running.")
        return
    for name in models:
        _console.print(Text(f"  {name}"))


def repl_banner() -> None:
    _console.print(
        Text("Interactive mode. Type 'help' for commands, 'exit' to quit.", style="dim")
    )
