"""Structured logging initialisation utilities."""
from __future__ import annotations

import logging
import logging.config
import sys
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

import structlog
import yaml


def configure_logging(config_path: Path, *, stream: Optional[TextIO] = None) -> None:
    """Configure stdlib and structlog logging using the YAML definition.

    ``stream`` redirects structlog output; the worker process passes
    ``sys.stderr`` because its stdout carries the result body.
    """
    target = stream if stream is not None else sys.stdout
    if not config_path.exists():
        logging.basicConfig(level=logging.INFO, stream=target)
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.add_log_level,
                structlog.processors.JSONRenderer(),
            ],
            logger_factory=structlog.PrintLoggerFactory(target),
        )
        return

    with config_path.open("r", encoding="utf-8") as handle:
        config: Dict[str, Any] = yaml.safe_load(handle)
    if stream is not None:
        for handler in config.get("handlers", {}).values():
            if handler.get("class") == "logging.StreamHandler":
                handler["stream"] = "ext://sys.stderr"
    logging.config.dictConfig(config)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.PrintLoggerFactory(target),
        cache_logger_on_first_use=True,
    )
