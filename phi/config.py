"""TOML settings for phi.

Two optional files are read: the user-wide ``$XDG_CONFIG_HOME/phi/config.toml``
(``~/.config/phi`` when unset) and ``phi.toml`` in the base directory. Command
line flags beat the project file, the project file beats the user file, and
anything left unset falls back to the built-in defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError  # noqa: F401 (re-exported)

_UNSET = object()  # argparse default meaning "flag not given"

DEFAULT_MODEL = "anthropic/claude-sonnet-4-5-20250929"
PROJECT_FILE = "phi.toml"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "max_rounds": int,
    "system_prompt": str,
    "chats_dir": str,
    "no_save": bool,
    "color": bool,
    "quiet": bool,
}

_POSITIVE_INT_KEYS = frozenset({"max_output_tokens", "max_rounds"})
_PATH_KEYS = ("chats_dir",)

# Fallbacks for argparse dests still holding _UNSET after config is applied
_DEFAULTS: dict[str, Any] = {
    "model": DEFAULT_MODEL,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 8192,
    "temperature": None,
    "max_rounds": 100,
    "system_prompt": None,
    "chats_dir": None,
    "no_save": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


def global_config_dir() -> Path:
    """Directory holding the user-wide config.toml."""
    base = os.environ.get("XDG_CONFIG_HOME")
    return (Path(base) if base else Path.home() / ".config") / "phi"


# --- Validation ---


def _describe(expected: type | tuple[type, ...]) -> str:
    types = expected if isinstance(expected, tuple) else (expected,)
    return " or ".join(t.__name__ for t in types)


def _check_value(key: str, value: Any, source: str) -> None:
    expected = CONFIG_KEYS[key]
    # TOML booleans are Python ints; only bool keys may hold them.
    wrong_bool = isinstance(value, bool) and expected is not bool
    if wrong_bool or not isinstance(value, expected):
        raise ConfigError(
            f"{source}: {key!r} expected {_describe(expected)}, got {type(value).__name__}"
        )
    if key in _POSITIVE_INT_KEYS and value < 1:
        raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")


def _validated(raw: dict, source: str) -> dict:
    """Type-check *raw* and return only the known keys.

    Unknown keys are reported on stderr and dropped.
    """
    known = {}
    for key, value in raw.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue
        _check_value(key, value, source)
        known[key] = value
    return known


def _anchor_paths(config: dict, config_dir: Path) -> None:
    """Make relative path settings relative to the file that set them."""
    for key in _PATH_KEYS:
        if key in config:
            path = Path(config[key]).expanduser()
            config[key] = str(path if path.is_absolute() else config_dir / path)


def _warn_secret_in_repo(config: dict, config_path: Path) -> None:
    if "api_key" not in config:
        return
    if any((d / ".git").exists() for d in config_path.parents):
        print(
            f"warning: {config_path}: 'api_key' is set in a file inside a git "
            "checkout and may get committed. Prefer an environment variable.",
            file=sys.stderr,
        )


def _read_file(path: Path) -> dict:
    """Parse and validate one config file; a missing file yields ``{}``."""
    if not path.is_file():
        return {}
    label = str(path)
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e
    config = _validated(raw, label)
    _anchor_paths(config, path.parent)
    return config


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Merged settings from the user and project files.

    Only keys present in a file appear in the result; defaults are applied
    later by apply_config_to_args.
    """
    merged = _read_file(global_config_dir() / "config.toml")
    project_path = Path(base_dir).resolve() / PROJECT_FILE
    project = _read_file(project_path)
    _warn_secret_in_repo(project, project_path)
    merged.update(project)
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill every flag the user did not pass, from *config* or the defaults."""

    def unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # one boolean setting drives both --color and --no-color
    if "color" in config and unset("color") and unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key in config.keys() - {"color"}:
        if unset(key):
            setattr(args, key, config[key])

    for dest, default in _DEFAULTS.items():
        if unset(dest):
            setattr(args, dest, default)


_TEMPLATE = """\
# phi settings
#
# Save as {global_path} for all projects or as <project>/{project_file}
# for one project. Everything is optional. Command line flags take precedence.

# Model, as a litellm model string
# model = "{model}"
# api_key = "sk-..."          # an environment variable is safer
# base_url = "https://..."
# max_output_tokens = 8192
# temperature = 0.7

# Agent
# max_rounds = 100
# system_prompt = "You are a helpful assistant."

# Saved chats
# chats_dir = "~/.phi/chats"
# no_save = false

# Terminal
# color = true                 # omit to detect automatically
# quiet = false
"""


def generate_config() -> str:
    """Commented-out config file template."""
    return _TEMPLATE.format(
        global_path="~/.config/phi/config.toml",
        project_file=PROJECT_FILE,
        model=DEFAULT_MODEL,
    )
