"""Structured logging via structlog."""

import logging

import structlog

from src.config.settings import settings


def setup_logging(level: str | None = None, json: bool | None = None) -> None:
    level_name = (level or settings.log_level).upper()
    use_json = settings.log_json if json is None else json

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level_name)
        ),
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
