"""Configuration file loading and merging for ollamacode.

Reads TOML config from ~/.config/ollamacode/config.toml (global) and
<base_dir>/ollamacode.toml (project). Precedence: CLI > project > global >
defaults.
"""

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

DEFAULT_HOST = "http://localhost:11434"
DEFAULT_MODEL = "llama3"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4096
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_REQUEST_TIMEOUT = 300

DEFAULT_ALLOWED_COMMANDS = (
    "ls",
    "cat",
    "head",
    "tail",
    "grep",
    "find",
    "git",
    "docker",
    "kubectl",
    "systemctl",
    "journalctl",
    "pwd",
    "whoami",
    "date",
    "echo",
    "which",
    "ps",
    "df",
    "du",
    "wc",
    "sort",
    "uniq",
    "tree",
)


@dataclass(frozen=True)
class Policy:
    """Read-only view of the safety policy at one decision point."""

    safe_mode: bool
    auto_approve: bool
    allow_list: frozenset[str]

    def command_allowed(self, command: str) -> bool:
        """Substring allow-list check on the command's first token.

        The first token passes if it equals an allow-list entry or contains
        one anywhere inside it.
        """
        if not self.safe_mode:
            return True
        parts = command.split(None, 1)
        cmd_name = parts[0] if parts else ""
        return any(
            cmd_name == allowed or allowed in cmd_name for allowed in self.allow_list
        )


@dataclass
class Settings:
    """Live session settings.

    Mutated by the interactive front end (``safe off``, ``use MODEL``...);
    the dispatcher and the agent loop re-read it at every decision point.
    """

    host: str = DEFAULT_HOST
    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    safe_mode: bool = True
    auto_approve: bool = False
    allowed_commands: list[str] = field(
        default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS)
    )
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT

    def policy(self) -> Policy:
        return Policy(
            safe_mode=self.safe_mode,
            auto_approve=self.auto_approve,
            allow_list=frozenset(self.allowed_commands),
        )

    def as_dict(self) -> dict:
        return {
            "host": self.host,
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "safe_mode": self.safe_mode,
            "auto_approve": self.auto_approve,
            "allowed_commands": sorted(self.allowed_commands),
            "max_iterations": self.max_iterations,
        }


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "host": str,
    "model": str,
    "temperature": (int, float),
    "max_tokens": int,
    "safe_mode": bool,
    "auto_approve": bool,
    "allowed_commands": list,
    "max_iterations": int,
    "request_timeout": int,
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {"allowed_commands"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "host": None,
    "model": DEFAULT_MODEL,
    "temperature": DEFAULT_TEMPERATURE,
    "max_tokens": DEFAULT_MAX_TOKENS,
    "safe_mode": True,
    "auto_approve": False,
    "allowed_commands": None,
    "max_iterations": DEFAULT_MAX_ITERATIONS,
    "request_timeout": DEFAULT_REQUEST_TIMEOUT,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "ollamacode"
    return Path.home() / ".config" / "ollamacode"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches or out-of-range values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

    if "temperature" in config and not 0.0 <= config["temperature"] <= 2.0:
        raise ConfigError(f"{source}: 'temperature' must be between 0.0 and 2.0")
    for key in ("max_tokens", "max_iterations", "request_timeout"):
        if key in config and isinstance(config[key], int) and config[key] < 1:
            raise ConfigError(f"{source}: {key!r} must be a positive integer")


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict holding only the keys actually set in config files
    (no defaults injected). Project values override global ones.
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "ollamacode.toml"
    project_config = _load_single(project_path, str(project_path))

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to the argparse namespace where the CLI didn't.

    Every dest still holding _UNSET takes the config value, then remaining
    sentinels are replaced with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive color pair
    if "color" in config:
        if _is_unset("color") and _is_unset("no_color"):
            args.color = config["color"]
            args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def settings_from_args(args: argparse.Namespace) -> Settings:
    """Build the session Settings from fully resolved CLI arguments."""
    host = args.host or os.environ.get("OLLAMA_HOST") or DEFAULT_HOST
    if not host.startswith(("http://", "https://")):
        host = f"http://{host}"

    if isinstance(args.allowed_commands, str):
        allowed = [c.strip() for c in args.allowed_commands.split(",") if c.strip()]
    elif args.allowed_commands is None:
        allowed = list(DEFAULT_ALLOWED_COMMANDS)
    else:
        allowed = list(args.allowed_commands)

    return Settings(
        host=host.rstrip("/"),
        model=args.model,
        temperature=float(args.temperature),
        max_tokens=args.max_tokens,
        safe_mode=args.safe_mode,
        auto_approve=args.auto_approve,
        allowed_commands=allowed,
        max_iterations=args.max_iterations,
        request_timeout=args.request_timeout,
    )


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# ollamacode configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/ollamacode.toml' if project else '~/.config/ollamacode/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Inference service ---",
        f'# host = "{DEFAULT_HOST}"',
        f'# model = "{DEFAULT_MODEL}"',
        f"# temperature = {DEFAULT_TEMPERATURE}",
        f"# max_tokens = {DEFAULT_MAX_TOKENS}",
        f"# request_timeout = {DEFAULT_REQUEST_TIMEOUT}",
        "",
        "# --- Agent behaviour ---",
        f"# max_iterations = {DEFAULT_MAX_ITERATIONS}",
        "",
        "# --- Safety ---",
        "# safe_mode = true",
        "# auto_approve = false",
        '# allowed_commands = ["ls", "cat", "git", "grep"]',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
