"""Runtime configuration for the directive ranker.

Values are read from ``RANKER_*`` environment variables once, when the
configuration object is built, and then passed explicitly to every component.
"""

from __future__ import annotations

import os
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


ENV_PREFIX = "RANKER_"

DEFAULT_WEIGHTS: Dict[str, float] = {
    "severity": 0.35,
    "relevance": 0.25,
    "layer_match": 0.15,
    "topic_match": 0.10,
    "tech_match": 0.10,
    "authoritativeness": 0.05,
}


class RankerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    weights: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    mode_boost: float = Field(default=1.2, ge=1.0)

    default_max_items: int = Field(default=8, ge=1)
    default_token_budget: int = Field(default=1000, ge=0)
    include_header: bool = True
    include_metadata: bool = True
    include_citations: bool = True

    cache_max_size: int = Field(default=1000, ge=1)
    cache_cleanup_interval: Optional[float] = Field(default=60.0, gt=0)
    directives_ttl: float = Field(default=600.0, gt=0)
    context_ttl: float = Field(default=1800.0, gt=0)
    ranking_ttl: float = Field(default=300.0, gt=0)

    context_provider: str = "rule-based"
    ollama_url: str = "http://127.0.0.1:11434"
    ollama_model: str = "llama3.2"
    ollama_timeout: float = Field(default=10.0, gt=0)
    cloud_api_key: Optional[str] = None
    cloud_url: Optional[str] = None
    cloud_model: Optional[str] = None
    cloud_timeout: float = Field(default=5.0, gt=0)

    store_path: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RankerConfig":
        env = os.environ if environ is None else environ
        values: Dict[str, object] = {}

        weights = dict(DEFAULT_WEIGHTS)
        for name in DEFAULT_WEIGHTS:
            raw = env.get(f"{ENV_PREFIX}WEIGHT_{name.upper()}")
            if raw is not None:
                weights[name] = _parse_float(raw, weights[name])
        values["weights"] = weights

        floats = {
            "mode_boost": "MODE_BOOST",
            "directives_ttl": "DIRECTIVES_TTL",
            "context_ttl": "CONTEXT_TTL",
            "ranking_ttl": "RANKING_TTL",
            "ollama_timeout": "OLLAMA_TIMEOUT",
            "cloud_timeout": "CLOUD_TIMEOUT",
        }
        for field_name, suffix in floats.items():
            raw = env.get(ENV_PREFIX + suffix)
            if raw is not None:
                values[field_name] = _parse_float(raw, cls.model_fields[field_name].default)

        ints = {
            "default_max_items": "MAX_ITEMS",
            "default_token_budget": "TOKEN_BUDGET",
            "cache_max_size": "CACHE_MAX_SIZE",
        }
        for field_name, suffix in ints.items():
            raw = env.get(ENV_PREFIX + suffix)
            if raw is not None:
                try:
                    values[field_name] = int(raw)
                except ValueError:
                    pass

        raw_interval = env.get(f"{ENV_PREFIX}CACHE_CLEANUP_INTERVAL")
        if raw_interval is not None:
            interval = _parse_float(raw_interval, 60.0)
            values["cache_cleanup_interval"] = interval if interval > 0 else None

        for field_name in ("include_header", "include_metadata", "include_citations"):
            raw = env.get(ENV_PREFIX + field_name.upper())
            if raw is not None:
                values[field_name] = raw.strip().lower() not in ("0", "false", "no", "off")

        strings = {
            "context_provider": "CONTEXT_PROVIDER",
            "ollama_url": "OLLAMA_URL",
            "ollama_model": "OLLAMA_MODEL",
            "cloud_api_key": "CLOUD_API_KEY",
            "cloud_url": "CLOUD_URL",
            "cloud_model": "CLOUD_MODEL",
            "store_path": "STORE_PATH",
            "log_level": "LOG_LEVEL",
        }
        for field_name, suffix in strings.items():
            raw = env.get(ENV_PREFIX + suffix)
            if raw is not None and raw.strip():
                values[field_name] = raw.strip()

        return cls(**values)


def _parse_float(raw: str, default: float) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default
