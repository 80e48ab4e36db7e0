from __future__ import annotations

import copy
import os
import tempfile
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class ChromeConfig:
    host: str
    port: int
    settle_seconds: float
    message_timeout_seconds: float
    page_load_timeout_seconds: float
    max_retries: int
    retry_delay_seconds: float

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass(frozen=True)
class OllamaConfig:
    url: str
    model: str
    options: dict[str, Any]
    timeout_seconds: int


@dataclass(frozen=True)
class PromptConfig:
    template: str
    length_limit: int
    context_length: int


@dataclass(frozen=True)
class LockConfig:
    path: str


@dataclass(frozen=True)
class Config:
    chrome: ChromeConfig
    ollama: OllamaConfig
    prompt: PromptConfig
    selected_feeds: list[int]
    lock: LockConfig

    def is_feed_selected(self, feed_id: int) -> bool:
        return feed_id in self.selected_feeds


DEFAULT_PROMPT_TEMPLATE = """Based on the following article content, please provide:
1. A concise summary (around 150 words)
2. 5 relevant tags (single words or short phrases)

Article content:"""

DEFAULT_CONFIG: dict[str, Any] = {
    "chrome": {
        "host": "localhost",
        "port": 9222,
        "settle_seconds": 10.0,
        "message_timeout_seconds": 60.0,
        "page_load_timeout_seconds": 120.0,
        "max_retries": 3,
        "retry_delay_seconds": 2.0,
    },
    "ollama": {
        "url": "http://localhost:11434",
        "model": "llama3",
        "options": {},
        "timeout_seconds": 600,
    },
    "prompt": {
        "template": DEFAULT_PROMPT_TEMPLATE,
        "length_limit": 8192,
        "context_length": 4096,
    },
    "feeds": {
        "selected": [],
    },
    "lock": {
        "path": os.path.join(tempfile.gettempdir(), "ollama-summarizer.lock"),
    },
}

# Values whose contents are passed through to a collaborator untouched.
_FREEFORM_PATHS = {"config.ollama.options"}

_RANGES: dict[tuple[str, str], tuple[float, float]] = {
    ("chrome", "port"): (1, 65535),
    ("chrome", "settle_seconds"): (0, 120),
    ("chrome", "message_timeout_seconds"): (1, 600),
    ("chrome", "page_load_timeout_seconds"): (1, 1800),
    ("chrome", "max_retries"): (1, 10),
    ("chrome", "retry_delay_seconds"): (0, 60),
    ("ollama", "timeout_seconds"): (1, 3600),
    ("prompt", "length_limit"): (1024, 32768),
    ("prompt", "context_length"): (1024, 32768),
}

_NON_EMPTY: list[tuple[str, str]] = [
    ("chrome", "host"),
    ("ollama", "model"),
    ("prompt", "template"),
    ("lock", "path"),
]

_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "FS_CHROME_HOST": ("chrome", "host", str),
    "FS_CHROME_PORT": ("chrome", "port", int),
    "FS_OLLAMA_URL": ("ollama", "url", str),
    "FS_OLLAMA_MODEL": ("ollama", "model", str),
    "FS_LOCK_PATH": ("lock", "path", str),
}


def default_config() -> Config:
    return build_config(DEFAULT_CONFIG)


def load_config(path: str | None = None, *, environ: dict[str, str] | None = None) -> Config:
    env = os.environ if environ is None else environ
    path = path or env.get("FS_CONFIG_PATH") or None
    cfg = _deep_copy(DEFAULT_CONFIG)
    if path:
        cfg = _deep_merge(cfg, _read_yaml(path))
    cfg = apply_env_overrides(cfg, env)
    return build_config(cfg)


def apply_env_overrides(cfg: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    result = _deep_copy(cfg)
    for name, (section, key, kind) in _ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or raw.strip() == "":
            continue
        try:
            value = kind(raw.strip())
        except ValueError as exc:
            raise ConfigError(f"Invalid config: {name} must be {kind.__name__}") from exc
        result.setdefault(section, {})[key] = value
    return result


def build_config(cfg: dict[str, Any]) -> Config:
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if errors:
        return errors
    for (section, key), (low, high) in _RANGES.items():
        value = cfg[section][key]
        if value < low or value > high:
            errors.append(f"config.{section}.{key} must be between {low:g} and {high:g}")
    for section, key in _NON_EMPTY:
        if not cfg[section][key].strip():
            errors.append(f"config.{section}.{key} must not be empty")
    if not _is_http_url(cfg["ollama"]["url"]):
        errors.append("config.ollama.url must be an http(s) URL")
    for option_key in cfg["ollama"]["options"]:
        if not isinstance(option_key, str):
            errors.append("config.ollama.options must have string keys")
            break
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        if path in _FREEFORM_PATHS:
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if isinstance(item, bool) or not isinstance(item, int):
                errors.append(f"{path} must be a list of integers")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _is_http_url(value: str) -> bool:
    try:
        split = urlsplit(value)
    except ValueError:
        return False
    return split.scheme in {"http", "https"} and bool(split.hostname)


def _build_config(cfg: dict[str, Any]) -> Config:
    chrome_cfg = cfg["chrome"]
    ollama_cfg = cfg["ollama"]
    prompt_cfg = cfg["prompt"]

    chrome = ChromeConfig(
        host=str(chrome_cfg["host"]).strip(),
        port=int(chrome_cfg["port"]),
        settle_seconds=float(chrome_cfg["settle_seconds"]),
        message_timeout_seconds=float(chrome_cfg["message_timeout_seconds"]),
        page_load_timeout_seconds=float(chrome_cfg["page_load_timeout_seconds"]),
        max_retries=int(chrome_cfg["max_retries"]),
        retry_delay_seconds=float(chrome_cfg["retry_delay_seconds"]),
    )

    ollama = OllamaConfig(
        url=str(ollama_cfg["url"]).rstrip("/"),
        model=str(ollama_cfg["model"]).strip(),
        options=dict(ollama_cfg["options"]),
        timeout_seconds=int(ollama_cfg["timeout_seconds"]),
    )

    prompt = PromptConfig(
        template=str(prompt_cfg["template"]),
        length_limit=int(prompt_cfg["length_limit"]),
        context_length=int(prompt_cfg["context_length"]),
    )

    return Config(
        chrome=chrome,
        ollama=ollama,
        prompt=prompt,
        selected_feeds=[int(feed_id) for feed_id in cfg["feeds"]["selected"]],
        lock=LockConfig(path=str(cfg["lock"]["path"])),
    )


def _read_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Invalid config: file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid config: {path} is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config: {path} must contain a mapping")
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any], path: str = "config") -> dict[str, Any]:
    merged = _deep_copy(base)
    for key, value in override.items():
        current = merged.get(key)
        key_path = f"{path}.{key}"
        if isinstance(current, dict) and isinstance(value, dict) and key_path not in _FREEFORM_PATHS:
            merged[key] = _deep_merge(current, value, key_path)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return copy.deepcopy(value)
