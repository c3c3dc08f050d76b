"""Centralized logging service using loguru."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from loguru import logger

from cookbook_ingest.config import settings

LOG_DIR = Path(settings.log_dir)
LOG_DIR.mkdir(parents=True, exist_ok=True)

logger.remove()

logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

logger.add(
    LOG_DIR / "ingest_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    level="DEBUG",
    rotation="00:00",
    retention="7 days",
    compression="zip",
)

for logger_name in (
    "httpx",
    "httpcore",
    "hpack",
    "openai._base_client",
    "asyncio",
    "trafilatura",
    "readability",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """Log an LLM API call."""
    call_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "model": model,
        "caller": caller,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
        "duration_ms": duration_ms,
        "status": status,
        "error": error,
    }
    if error:
        logger.error(f"LLM_CALL_FAILED: {call_data}")
    else:
        logger.info(f"LLM_CALL: {call_data}")


def log_phase(
    task_id: str,
    phase: str,
    status: str,
    progress: int | None = None,
    data: Optional[dict] = None,
) -> None:
    """Log an ingest phase transition."""
    phase_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "task_id": task_id,
        "phase": phase,
        "status": status,
        "progress": progress,
        "data": data,
    }
    if status == "failed":
        logger.error(f"INGEST_PHASE_FAILED: {phase_data}")
    else:
        logger.info(f"INGEST_PHASE: {phase_data}")


def log_fetch(
    url: str,
    status: str,
    status_code: int | None = None,
    attempts: int = 0,
    duration_ms: int = 0,
    error_code: Optional[str] = None,
) -> None:
    """Log an outbound page fetch."""
    fetch_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "url": url,
        "status": status,
        "status_code": status_code,
        "attempts": attempts,
        "duration_ms": duration_ms,
        "error_code": error_code,
    }
    if error_code:
        logger.warning(f"FETCH_FAILED: {fetch_data}")
    else:
        logger.info(f"FETCH: {fetch_data}")


def log_event(
    event_type: str,
    message: str,
    **kwargs,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.info(f"EVENT: {event_data}")
