#!/usr/bin/env python3
"""Centralized configuration with validation and sensible defaults.

Settings are read from the environment once per process (``.env`` is loaded
through python-dotenv) and passed explicitly into the pipeline. Component code
never reads ``os.environ`` directly.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from citerag.errors import ConfigurationError

DEFAULT_GROUNDX_BASE_URL = "https://api.groundx.ai/api"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"

AUTH_STYLES: Tuple[str, ...] = ("api_key", "bearer", "token")
# "path" means the identifier travels in the URL, everything else is a body field name
ID_FIELDS: Tuple[str, ...] = ("path", "bucketId", "projectId", "groupId", "id")

# Env name -> Settings attribute, in the order they are reported when missing
REQUIRED_ENV: Tuple[Tuple[str, str], ...] = (
    ("GROUNDX_API_KEY", "retrieval_api_key"),
    ("GROUNDX_BUCKET_ID", "retrieval_bucket_id"),
    ("OPENAI_API_KEY", "generation_api_key"),
)


def _get_env(env: Mapping[str, str], name: str, default: Optional[str] = None) -> str:
    val = env.get(name)
    return val.strip() if val is not None else (default or "")


def _parse_int(env: Mapping[str, str], name: str, default: int) -> int:
    try:
        return int(_get_env(env, name, str(default)))
    except ValueError:
        return default


def _parse_float(env: Mapping[str, str], name: str, default: float) -> float:
    try:
        return float(_get_env(env, name, str(default)))
    except ValueError:
        return default


def _parse_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    v = _get_env(env, name).lower()
    if v in ("1", "true", "yes", "y"):
        return True
    if v in ("0", "false", "no", "n"):
        return False
    return default


def _parse_list(env: Mapping[str, str], name: str, default: str = "") -> List[str]:
    return [s.strip() for s in _get_env(env, name, default).split(",") if s.strip()]


def _parse_axis(env: Mapping[str, str], name: str, allowed: Tuple[str, ...]) -> Tuple[str, ...]:
    values = _parse_list(env, name, ",".join(allowed))
    unknown = [v for v in values if v not in allowed]
    if unknown:
        raise ConfigurationError(
            f"{name} contains unknown values {unknown}; allowed: {list(allowed)}",
            context={"env": name},
        )
    return tuple(values) or allowed


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, constructed once at startup."""

    # Retrieval backend
    retrieval_api_key: str = ""
    retrieval_bucket_id: str = ""
    retrieval_base_url: str = DEFAULT_GROUNDX_BASE_URL
    retrieval_fallback_base_urls: Tuple[str, ...] = ()
    retrieval_auth_styles: Tuple[str, ...] = AUTH_STYLES
    retrieval_id_fields: Tuple[str, ...] = ID_FIELDS
    retrieval_num_results: int = 5
    retrieval_max_attempts: int = 0

    # Generation backend
    generation_api_key: str = ""
    generation_model: str = DEFAULT_OPENAI_MODEL
    generation_base_url: str = DEFAULT_OPENAI_BASE_URL
    generation_temperature: float = 0.2

    # Pipeline
    max_sources: int = 10
    http_timeout_seconds: float = 60.0

    # Service
    log_level: str = "INFO"
    log_file: Optional[str] = None
    cors_allowed_origins: Tuple[str, ...] = field(default_factory=tuple)
    debug_endpoint_enabled: bool = False
    api_host: str = "0.0.0.0"
    api_port: int = 7001

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``environ`` (defaults to ``os.environ`` after loading ``.env``)."""
        if environ is None:
            load_dotenv()
            environ = os.environ
        env = environ

        num_results = _parse_int(env, "GROUNDX_NUM_RESULTS", 5)
        max_sources = _parse_int(env, "MAX_SOURCES", 10)
        timeout = _parse_float(env, "HTTP_TIMEOUT_SECONDS", 60.0)

        return cls(
            retrieval_api_key=_get_env(env, "GROUNDX_API_KEY"),
            retrieval_bucket_id=_get_env(env, "GROUNDX_BUCKET_ID"),
            retrieval_base_url=_get_env(env, "GROUNDX_BASE_URL", DEFAULT_GROUNDX_BASE_URL).rstrip("/"),
            retrieval_fallback_base_urls=tuple(
                u.rstrip("/") for u in _parse_list(env, "GROUNDX_FALLBACK_BASE_URLS")
            ),
            retrieval_auth_styles=_parse_axis(env, "GROUNDX_AUTH_STYLES", AUTH_STYLES),
            retrieval_id_fields=_parse_axis(env, "GROUNDX_ID_FIELDS", ID_FIELDS),
            retrieval_num_results=num_results if num_results > 0 else 5,
            retrieval_max_attempts=max(0, _parse_int(env, "GROUNDX_MAX_ATTEMPTS", 0)),
            generation_api_key=_get_env(env, "OPENAI_API_KEY"),
            generation_model=_get_env(env, "OPENAI_MODEL") or DEFAULT_OPENAI_MODEL,
            generation_base_url=_get_env(env, "OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL).rstrip("/"),
            generation_temperature=_parse_float(env, "LLM_TEMPERATURE", 0.2),
            max_sources=max_sources if max_sources > 0 else 10,
            http_timeout_seconds=timeout if timeout > 0 else 60.0,
            log_level=_get_env(env, "LOG_LEVEL", "INFO").upper(),
            log_file=_get_env(env, "LOG_FILE") or None,
            cors_allowed_origins=tuple(_parse_list(env, "CORS_ALLOWED_ORIGINS")),
            debug_endpoint_enabled=_parse_bool(env, "DEBUG_ENDPOINT_ENABLED"),
            api_host=_get_env(env, "API_HOST", "0.0.0.0"),
            api_port=_parse_int(env, "API_PORT", 7001),
        )

    def missing_required(self) -> List[str]:
        """Env names of required values that are not set."""
        return [env_name for env_name, attr in REQUIRED_ENV if not getattr(self, attr)]

    def require_complete(self) -> None:
        """Raise ConfigurationError naming the first missing required value."""
        missing = self.missing_required()
        if missing:
            raise ConfigurationError(f"Missing {missing[0]}", context={"missing": missing})

    def retrieval_base_urls(self) -> List[str]:
        """Primary host first, then legacy / alternate-region hosts, without duplicates."""
        urls: List[str] = []
        for url in (self.retrieval_base_url, *self.retrieval_fallback_base_urls):
            if url and url not in urls:
                urls.append(url)
        return urls

    def masked_summary(self) -> Dict[str, Optional[str]]:
        """Configuration snapshot safe to expose on the debug endpoint."""
        return {
            "GROUNDX_API_KEY": mask_secret(self.retrieval_api_key),
            "GROUNDX_BUCKET_ID": self.retrieval_bucket_id or None,
            "OPENAI_API_KEY": mask_secret(self.generation_api_key),
            "OPENAI_MODEL": self.generation_model or None,
            "GROUNDX_BASE_URL": self.retrieval_base_url,
            "OPENAI_BASE_URL": self.generation_base_url,
        }


def mask_secret(value: Optional[str]) -> Optional[str]:
    """Keep the first and last four characters of a secret."""
    if not value:
        return None
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}...{value[-4:]}"
