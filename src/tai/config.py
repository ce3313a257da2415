"""Settings resolution from environment, project-local and global sources."""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import toml

from tai.errors import ConfigError
from tai.paths import TaiPaths

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-3-5-sonnet-latest"
PROVIDER_URLS: dict[str, str] = {
    "anthropic": "https://api.anthropic.com/v1/messages",
    "openai": "https://api.openai.com/v1/chat/completions",
    "ollama": "http://localhost:11434/v1/chat/completions",
    "lmstudio": "http://localhost:1234/v1/chat/completions",
}
DEFAULT_PROVIDER = "anthropic"
NOT_SET = "<not set>"

RECOGNIZED_KEYS: tuple[str, ...] = (
    "model",
    "temperature",
    "max_tokens",
    "anthropic_api_key",
    "global_contexts",
    "provider",
    "openai_api_key",
    "max_steps",
    "history_limit",
    "history_window_minutes",
    "output_limit",
    "command_timeout",
    "confirm_timeout",
    "shell",
    "api_url",
    "request_timeout",
    "log_dir",
)

_ENV_NAME_OVERRIDES = {
    "anthropic_api_key": "ANTHROPIC_API_KEY",
    "openai_api_key": "OPENAI_API_KEY",
}

_SENSITIVE_HINTS = frozenset(
    {
        "key",
        "apikey",
        "token",
        "secret",
        "password",
        "passwd",
        "auth",
        "authorization",
        "cookie",
        "credential",
        "credentials",
    }
)


@dataclass(slots=True)
class Settings:
    """Effective settings for one invocation."""

    model: str = DEFAULT_MODEL
    temperature: float = 0.0
    max_tokens: int = 1500
    anthropic_api_key: str | None = None
    global_contexts: list[str] = field(default_factory=list)
    provider: str = DEFAULT_PROVIDER
    openai_api_key: str | None = None
    max_steps: int = 10
    history_limit: int = 10
    history_window_minutes: int = 60
    output_limit: int = 4000
    command_timeout: float = 120.0
    confirm_timeout: float | None = None
    shell: str = field(default_factory=lambda: _default_shell_for_platform())
    api_url: str | None = None
    request_timeout: float = 60.0
    log_dir: str | None = None
    extras: dict[str, object] = field(default_factory=dict)

    def get(self, key: str, default: object = None) -> object:
        if key in RECOGNIZED_KEYS:
            return getattr(self, key)
        return self.extras.get(key, default)

    @property
    def effective_api_url(self) -> str:
        return self.api_url or PROVIDER_URLS[self.provider]

    @property
    def provider_api_key(self) -> str | None:
        if self.provider == "anthropic":
            return self.anthropic_api_key
        return self.openai_api_key

    def as_dict(self) -> dict[str, object]:
        values: dict[str, object] = {key: getattr(self, key) for key in RECOGNIZED_KEYS}
        values.update(self.extras)
        return values


def env_var_name(key: str) -> str:
    return _ENV_NAME_OVERRIDES.get(key, f"TAI_{key.upper()}")


def env_source(environ: Mapping[str, str] | None = None) -> dict[str, object]:
    """Collect recognized keys from environment variables of matching name."""
    env = os.environ if environ is None else environ
    source: dict[str, object] = {}
    for key in RECOGNIZED_KEYS:
        raw = env.get(env_var_name(key))
        if raw is None or not raw.strip():
            continue
        source[key] = raw.strip()
    return source


def resolve_settings(
    env: Mapping[str, object],
    local: Mapping[str, object],
    global_: Mapping[str, object],
) -> Settings:
    """Merge the three sources; environment beats local, local beats global."""
    merged: dict[str, object] = {}
    for source in (global_, local, env):
        merged = _merge_dicts(merged, dict(source))

    values: dict[str, object] = {}
    extras: dict[str, object] = {}
    for key, raw_value in merged.items():
        if key in _COERCERS:
            values[key] = coerce_value(key, raw_value)
        else:
            extras[key] = raw_value
    return Settings(**values, extras=extras)  # type: ignore[arg-type]


def coerce_value(key: str, raw_value: object) -> object:
    coercer = _COERCERS.get(key)
    if coercer is None:
        raise ConfigError(f"Unknown config key: {key}", key=key)
    try:
        return coercer(raw_value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {key}: {raw_value!r} ({exc})", key=key) from exc


def load_config_file(path: Path | None) -> dict[str, object]:
    """Parse a TOML config file; a missing file is an empty source."""
    if path is None or not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = toml.load(fh)
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    except toml.TomlDecodeError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    LOGGER.debug("config_file_loaded", extra={"path": str(path), "keys": sorted(parsed)})
    return dict(parsed)


def load_settings(paths: TaiPaths, environ: Mapping[str, str] | None = None) -> Settings:
    return resolve_settings(
        env_source(environ),
        load_config_file(paths.local_config_file),
        load_config_file(paths.global_config_file),
    )


def set_config_value(path: Path, key: str, raw_value: object) -> object:
    """Validate ``raw_value`` and persist it to the explicit target file."""
    value = coerce_value(key, raw_value)
    data = load_config_file(path)
    if value is None:
        data.pop(key, None)
    else:
        data[key] = value
    _write_config_file(path, data)
    LOGGER.info("config_value_written", extra={"path": str(path), "key": key})
    return value


def describe_settings(settings: Settings) -> list[tuple[str, str]]:
    """Render each recognized key for display, masking credentials."""
    values = settings.as_dict()
    return [(key, describe_value(key, value)) for key, value in values.items()]


def describe_value(key: str, value: object) -> str:
    if value is None:
        return NOT_SET
    if is_sensitive_key(key):
        return "***"
    if isinstance(value, list):
        return ", ".join(str(item) for item in value) if value else "<none>"
    return str(value)


def is_sensitive_key(key: str) -> bool:
    """Whether a setting name looks like it holds a secret (`openai_api_key`, `github_token`)."""
    parts = [part for part in key.lower().replace("-", "_").split("_") if part]
    return any(part in _SENSITIVE_HINTS for part in parts)


def _write_config_file(path: Path, data: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            toml.dump(data, fh)
        os.replace(temp_name, path)
    except OSError as exc:
        Path(temp_name).unlink(missing_ok=True)
        raise ConfigError(f"Failed to write config file {path}: {exc}") from exc


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _to_non_empty_string(value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("expected a non-empty string")
    return value.strip()


def _to_optional_string(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("expected a string")
    return value.strip() or None


def _to_number(value: object) -> float:
    if isinstance(value, bool):
        raise ValueError("expected a number")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return float(value.strip())
    raise ValueError("expected a number")


def _to_int(value: object) -> int:
    if isinstance(value, bool):
        raise ValueError("expected an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    raise ValueError("expected an integer")


def _to_temperature(value: object) -> float:
    temperature = _to_number(value)
    if not 0.0 <= temperature <= 2.0:
        raise ValueError("must be between 0.0 and 2.0")
    return temperature


def _to_positive_int(value: object) -> int:
    parsed = _to_int(value)
    if parsed <= 0:
        raise ValueError("must be a positive integer")
    return parsed


def _to_non_negative_int(value: object) -> int:
    parsed = _to_int(value)
    if parsed < 0:
        raise ValueError("must not be negative")
    return parsed


def _to_positive_number(value: object) -> float:
    parsed = _to_number(value)
    if parsed <= 0:
        raise ValueError("must be greater than zero")
    return parsed


def _to_optional_timeout(value: object) -> float | None:
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() in {"", "none", "off"}:
        return None
    parsed = _to_number(value)
    if parsed < 0:
        raise ValueError("must not be negative")
    return parsed or None


def _to_name_list(value: object) -> list[str]:
    if isinstance(value, str):
        items: list[object] = list(value.split(","))
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        raise ValueError("expected a list of names")
    names: list[str] = []
    for item in items:
        if not isinstance(item, str):
            raise ValueError("expected a list of names")
        name = item.strip()
        if name and name not in names:
            names.append(name)
    return names


def _shell_value(value: object) -> str:
    normalized = _to_non_empty_string(value).lower()
    aliases = {
        "cmd": "cmd",
        "bash": "bash",
        "sh": "sh",
        "shell": "sh",
    }
    if normalized not in aliases:
        raise ValueError("expected one of sh, bash, cmd")
    return aliases[normalized]


def _provider_value(value: object) -> str:
    normalized = _to_non_empty_string(value).lower()
    if normalized not in PROVIDER_URLS:
        raise ValueError(f"expected one of {', '.join(PROVIDER_URLS)}")
    return normalized


def _default_shell_for_platform(os_name: str | None = None) -> str:
    platform_name = os.name if os_name is None else os_name
    return "cmd" if platform_name == "nt" else "sh"


_COERCERS: dict[str, Callable[[object], object]] = {
    "model": _to_non_empty_string,
    "temperature": _to_temperature,
    "max_tokens": _to_positive_int,
    "anthropic_api_key": _to_optional_string,
    "global_contexts": _to_name_list,
    "provider": _provider_value,
    "openai_api_key": _to_optional_string,
    "max_steps": _to_positive_int,
    "history_limit": _to_positive_int,
    "history_window_minutes": _to_non_negative_int,
    "output_limit": _to_positive_int,
    "command_timeout": _to_positive_number,
    "confirm_timeout": _to_optional_timeout,
    "shell": _shell_value,
    "api_url": _to_optional_string,
    "request_timeout": _to_positive_number,
    "log_dir": _to_optional_string,
}
