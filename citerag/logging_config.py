from __future__ import annotations

"""
Centralized logging configuration for the cited-answer service.

Provides unified logging across all modules using loguru.
Supports both console and file output with structured logging.
"""

import re
import sys
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from loguru import logger

from citerag.config import Settings

_SECRET_PATTERNS = (
    (re.compile(r"(Bearer|Token)\s+[^\s\"',]+", re.IGNORECASE), r"\1 ***"),
    (re.compile(r"(x-api-key[\"']?\s*[:=]\s*[\"']?)[^\s\"',]+", re.IGNORECASE), r"\1***"),
    (re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"), "sk-***"),
)


def redact_secrets(text: Any) -> str:
    """Mask bearer/token credentials and API-key header values in free text."""
    out = str(text)
    for pattern, replacement in _SECRET_PATTERNS:
        out = pattern.sub(replacement, out)
    return out


def setup_logging(settings: Settings) -> None:
    """
    Configure unified logging for the whole service.

    This should be called once at application startup.
    """
    # Remove default handler
    logger.remove()

    # Console handler with colored output
    logger.add(
        sys.stderr,
        format=(
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=settings.log_level,
        colorize=True,
    )

    # File handler if LOG_FILE is set
    if settings.log_file:
        logger.add(
            settings.log_file,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name}:{function}:{line} - "
                "{message}"
            ),
            level=settings.log_level,
            rotation="500 MB",
            retention="7 days",
            compression="zip",
        )

    logger.info(f"Logging configured: level={settings.log_level}")


def log_structured(event_type: str, data: Dict[str, Any], level: str = "info") -> None:
    """
    Log structured data as JSON.

    Args:
        event_type: Type of event (e.g., 'retrieval_completed', 'error_occurred')
        data: Dictionary of data to log
        level: Log level (debug, info, warning, error, critical)
    """
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event_type,
        **data,
    }

    # Redact sensitive information
    for key in ("error", "message", "upstream_body"):
        if log_entry.get(key):
            log_entry[key] = redact_secrets(log_entry[key])

    log_func = getattr(logger, level.lower(), logger.info)
    log_func(json.dumps(log_entry, default=str))


def log_retrieval_attempt(
    request_id: str,
    attempt: int,
    total: int,
    url: str,
    auth_style: str,
    id_field: str,
    outcome: str,
    status_code: Optional[int] = None,
) -> None:
    """Log one probe of the retrieval attempt matrix."""
    log_structured(
        "retrieval_attempt",
        {
            "request_id": request_id,
            "attempt": attempt,
            "total": total,
            "url": url,
            "auth_style": auth_style,
            "id_field": id_field,
            "outcome": outcome,
            "status_code": status_code,
        },
        level="debug" if outcome == "success" else "info",
    )


def log_retrieval(
    request_id: str,
    query: str,
    latency_ms: int,
    results_count: int,
    attempts: int,
    has_context_text: bool,
) -> None:
    """Log a completed retrieval."""
    log_structured(
        "retrieval_completed",
        {
            "request_id": request_id,
            "query": query[:100],  # Truncate long queries
            "latency_ms": latency_ms,
            "results_count": results_count,
            "attempts": attempts,
            "has_context_text": has_context_text,
        },
    )


def log_generation(
    request_id: str,
    model: str,
    latency_ms: int,
    answer_chars: int,
    sources_count: int,
) -> None:
    """Log a completed generation call."""
    log_structured(
        "generation_completed",
        {
            "request_id": request_id,
            "model": model,
            "latency_ms": latency_ms,
            "answer_chars": answer_chars,
            "sources_count": sources_count,
        },
    )


def log_error(error_type: str, message: str, request_id: Optional[str] = None, **kwargs: Any) -> None:
    """Log an error with context."""
    log_structured(
        "error_occurred",
        {
            "error_type": error_type,
            "message": message,
            "request_id": request_id,
            **kwargs,
        },
        level="error",
    )
