"""Configuration file loading and merging for agentloop.

Reads TOML config from ~/.config/agentloop/config.toml (global) and
<project_root>/agentloop.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "temperature": (int, float),
    "system_prompt": str,
    "auto_approve": bool,
    "debug": bool,
    "color": bool,
    "quiet": bool,
}

PROVIDERS = ("groq", "openrouter", "lmstudio")

API_KEY_ENV_VARS = {
    "groq": "GROQ_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "groq",
    "model": None,
    "api_key": None,
    "base_url": None,
    "temperature": 1.0,
    "system_prompt": None,
    "auto_approve": False,
    "debug": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "agentloop"
    return Path.home() / ".config" / "agentloop"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches or an unknown provider.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    if "provider" in config and config["provider"] not in PROVIDERS:
        raise ConfigError(
            f"{source}: unknown provider {config['provider']!r} "
            f"(expected one of: {', '.join(PROVIDERS)})"
        )


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
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

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(project_root: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict holding only keys that were set in a config file
    (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(project_root).resolve() / "agentloop.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config}


def api_key_env_var(provider: str) -> str:
    return API_KEY_ENV_VARS.get(provider, "GROQ_API_KEY")


def resolve_api_key(
    provider: str, explicit: str | None = None, config: dict | None = None
) -> str | None:
    """Credential lookup: explicit value, then the provider's env var, then config."""
    if explicit:
        return explicit
    env_value = os.environ.get(api_key_env_var(provider))
    if env_value:
        return env_value
    return (config or {}).get("api_key") or None


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Remaining _UNSET sentinels are replaced with the hardcoded defaults.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the --color / --no-color pair.
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
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


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# agentloop configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/agentloop.toml' if project else '~/.config/agentloop/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "groq"               # "groq" | "openrouter" | "lmstudio"',
        '# model = "moonshotai/kimi-k2-instruct"',
        '# api_key = "gsk_..."              # prefer GROQ_API_KEY; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Generation ---",
        "# temperature = 1.0",
        '# system_prompt = "You are a helpful assistant."',
        "",
        "# --- Approvals ---",
        "# auto_approve = false   # skip prompts for create_file / edit_file",
        "",
        "# --- UI / diagnostics ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "# debug = false      # write debug-agent.log in the project root",
        "",
    ]
    return "\n".join(lines)
