"""Configuration file loading and merging for maki.

Reads TOML config from ~/.config/maki/config.toml (global) and
./maki.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .llm import DEFAULT_MODEL

_UNSET = object()  # Sentinel for "not set by CLI"

API_KEY_ENV = "OPENROUTER_API_KEY"
PROJECT_CONFIG = "maki.toml"

DEFAULT_MODELS = [
    DEFAULT_MODEL,
    "openai/gpt-4.1",
    "google/gemini-2.5-flash",
    "meta-llama/llama-3.3-70b-instruct",
]


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "models": list,
    "api_key": str,
    "base_url": str,
    "workspace": str,
    "database": str,
    "max_iterations": int,
    "max_history": int,
    "timeout": (int, float),
    "temperature": (int, float),
    "color": bool,
    "log_file": str,
}

_LIST_OF_STR_KEYS = {"models"}
_PATH_KEYS = ("workspace", "database", "log_file")
_POSITIVE_INT_KEYS = ("max_iterations", "max_history")

# Argparse dest -> hardcoded default. Path defaults that depend on the
# config directory are filled in by apply_config_to_args.
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": None,
    "models": None,
    "api_key": None,
    "base_url": None,
    "workspace": "file_assistant_workspace",
    "database": None,
    "max_iterations": 15,
    "max_history": 100,
    "timeout": 60,
    "temperature": 0.1,
    "color": False,
    "no_color": False,
    "log_file": None,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "maki"
    return Path.home() / ".config" / "maki"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(f"{source}: {key!r} expected {_type_name(expected)}, got bool")
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            if not value:
                raise ConfigError(f"{source}: {key!r} must not be empty")
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1")


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative paths in config against the config file's parent directory."""
    for key in _PATH_KEYS:
        if key in config:
            expanded = Path(config[key]).expanduser()
            if not expanded.is_absolute():
                expanded = config_dir / expanded
            config[key] = str(expanded)


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using {API_KEY_ENV}.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{label}: cannot read file: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(project_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with only the keys actually set in config files,
    plus ``config_dir`` (a ``Path``) pointing to the global config directory.
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    _resolve_paths(global_config, global_path.parent)

    project_path = Path(project_dir).resolve() / PROJECT_CONFIG
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    merged = {**global_config, **project_config}
    merged["config_dir"] = config_dir
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Remaining _UNSET sentinels are then replaced with hardcoded defaults,
    and the database and log paths default into the config directory.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key in ("color", "config_dir"):
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)

    config_dir = Path(config.get("config_dir") or global_config_dir())
    if args.database is None:
        args.database = str(config_dir / "maki.db")
    if args.log_file is None:
        args.log_file = str(config_dir / "maki.log")
    if not args.models:
        args.models = list(DEFAULT_MODELS)
    if args.model is None:
        args.model = args.models[0]
    elif args.model not in args.models:
        args.models = [args.model] + list(args.models)


def resolve_api_key(cli_value: str | None, config: dict) -> str:
    """Pick the credential: CLI flag, then config file, then environment.

    Raises:
        ConfigError: No credential is available.
    """
    for candidate in (cli_value, config.get("api_key"), os.environ.get(API_KEY_ENV)):
        if candidate:
            return candidate
    raise ConfigError(
        f"no API key found. Set the {API_KEY_ENV} environment variable "
        f"(get a key at https://openrouter.ai/keys), or pass --api-key."
    )


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# maki configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'./maki.toml' if project else '~/.config/maki/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Model ---",
        f'# model = "{DEFAULT_MODEL}"',
        f"# models = {DEFAULT_MODELS!r}".replace("'", '"'),
        f'# api_key = "sk-or-..."            # prefer {API_KEY_ENV}; this is a fallback',
        '# base_url = "https://openrouter.ai/api/v1"',
        "# temperature = 0.1",
        "# timeout = 60",
        "",
        "# --- Agent ---",
        "# max_iterations = 15",
        "# max_history = 100",
        '# workspace = "file_assistant_workspace"',
        "",
        "# --- Storage ---",
        '# database = "~/.config/maki/maki.db"',
        '# log_file = "~/.config/maki/maki.log"',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "",
    ]
    return "\n".join(lines)
