from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class SchedulerConfig:
    tick_seconds: int
    fact_concurrency: int
    news_concurrency: int
    scrape_concurrency: int
    scrape_timeout_seconds: int
    failure_backoff_seconds: int
    facts_timeout_seconds: int
    summarize_timeout_seconds: int
    discover_timeout_seconds: int


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_body_bytes: int


@dataclass(frozen=True)
class SimilarityConfig:
    threshold: float
    ngram_size: int


@dataclass(frozen=True)
class SourcesConfig:
    removal_threshold: int
    validation_timeout_seconds: int
    min_validation_chars: int
    max_content_chars: int


@dataclass(frozen=True)
class LlmConfig:
    gemini_model: str
    ollama_url: str
    ollama_model: str
    chutes_model: str


@dataclass(frozen=True)
class Config:
    paths: PathsConfig
    scheduler: SchedulerConfig
    http: HttpConfig
    similarity: SimilarityConfig
    sources: SourcesConfig
    llm: LlmConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/kibble.sqlite3",
    },
    "scheduler": {
        "tick_seconds": 60,
        "fact_concurrency": 3,
        "news_concurrency": 2,
        "scrape_concurrency": 5,
        "scrape_timeout_seconds": 300,
        "failure_backoff_seconds": 300,
        "facts_timeout_seconds": 300,
        "summarize_timeout_seconds": 480,
        "discover_timeout_seconds": 300,
    },
    "http": {
        "timeout_seconds": 30,
        "user_agent": "Kibble/1.0 (AI Facts & News Dashboard; +https://github.com/thinkscotty/kibble)",
        "max_body_bytes": 1048576,
    },
    "similarity": {
        "threshold": 0.6,
        "ngram_size": 3,
    },
    "sources": {
        "removal_threshold": 3,
        "validation_timeout_seconds": 15,
        "min_validation_chars": 200,
        "max_content_chars": 50000,
    },
    "llm": {
        "gemini_model": "gemini-2.5-flash",
        "ollama_url": "http://localhost:11434",
        "ollama_model": "mistral-nemo",
        "chutes_model": "deepseek-ai/DeepSeek-V3",
    },
}

CONFIG_ENV = "KIBBLE_CONFIG"


def get_state_db_path() -> str:
    data_dir = os.environ.get("KIBBLE_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])
    return os.path.join(data_dir, "kibble.sqlite3")


def default_config() -> Config:
    return _build_config(_deep_copy(DEFAULT_CONFIG))


def load_config(path: str | None = None) -> Config:
    path = path or os.environ.get(CONFIG_ENV) or None
    cfg = _deep_copy(DEFAULT_CONFIG)
    if path:
        cfg = _deep_merge(cfg, _read_yaml(path))
    data_dir = os.environ.get("KIBBLE_DATA_DIR")
    if data_dir:
        cfg["paths"]["data_dir"] = data_dir
        cfg["paths"]["state_db"] = os.path.join(data_dir, "kibble.sqlite3")
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def _read_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"config file is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("config file must contain a mapping")
    return data


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if not errors:
        threshold = cfg["similarity"]["threshold"]
        if not 0 < threshold <= 1:
            errors.append("config.similarity.threshold must be in (0, 1]")
        if cfg["similarity"]["ngram_size"] < 1:
            errors.append("config.similarity.ngram_size must be positive")
        for key in ("fact_concurrency", "news_concurrency", "scrape_concurrency"):
            if cfg["scheduler"][key] < 1:
                errors.append(f"config.scheduler.{key} must be positive")
        if cfg["sources"]["removal_threshold"] < 1:
            errors.append("config.sources.removal_threshold must be positive")
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
        _validate_dict(value, default, path, errors)
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


def _build_config(cfg: dict[str, Any]) -> Config:
    paths_cfg = cfg["paths"]
    scheduler_cfg = cfg["scheduler"]
    http_cfg = cfg["http"]
    similarity_cfg = cfg["similarity"]
    sources_cfg = cfg["sources"]
    llm_cfg = cfg["llm"]

    paths = PathsConfig(
        data_dir=str(paths_cfg["data_dir"]),
        state_db=str(paths_cfg["state_db"]),
    )
    scheduler = SchedulerConfig(
        tick_seconds=int(scheduler_cfg["tick_seconds"]),
        fact_concurrency=int(scheduler_cfg["fact_concurrency"]),
        news_concurrency=int(scheduler_cfg["news_concurrency"]),
        scrape_concurrency=int(scheduler_cfg["scrape_concurrency"]),
        scrape_timeout_seconds=int(scheduler_cfg["scrape_timeout_seconds"]),
        failure_backoff_seconds=int(scheduler_cfg["failure_backoff_seconds"]),
        facts_timeout_seconds=int(scheduler_cfg["facts_timeout_seconds"]),
        summarize_timeout_seconds=int(scheduler_cfg["summarize_timeout_seconds"]),
        discover_timeout_seconds=int(scheduler_cfg["discover_timeout_seconds"]),
    )
    http = HttpConfig(
        timeout_seconds=int(http_cfg["timeout_seconds"]),
        user_agent=str(http_cfg["user_agent"]),
        max_body_bytes=int(http_cfg["max_body_bytes"]),
    )
    similarity = SimilarityConfig(
        threshold=float(similarity_cfg["threshold"]),
        ngram_size=int(similarity_cfg["ngram_size"]),
    )
    sources = SourcesConfig(
        removal_threshold=int(sources_cfg["removal_threshold"]),
        validation_timeout_seconds=int(sources_cfg["validation_timeout_seconds"]),
        min_validation_chars=int(sources_cfg["min_validation_chars"]),
        max_content_chars=int(sources_cfg["max_content_chars"]),
    )
    llm = LlmConfig(
        gemini_model=str(llm_cfg["gemini_model"]),
        ollama_url=str(llm_cfg["ollama_url"]),
        ollama_model=str(llm_cfg["ollama_model"]),
        chutes_model=str(llm_cfg["chutes_model"]),
    )
    return Config(
        paths=paths,
        scheduler=scheduler,
        http=http,
        similarity=similarity,
        sources=sources,
        llm=llm,
    )


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
