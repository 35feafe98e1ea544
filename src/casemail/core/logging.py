"""structlog setup and the pipeline_run_id correlation id.

Log lines go to stderr so that CLI tables and run summaries on stdout can
be piped on their own. Every line written while a pass is running carries
that pass's pipeline_run_id, which is also the runId of its persisted
summary, so a summary can be matched to its log lines.

Usage:
    from casemail.core.logging import get_logger, pipeline_run

    logger = get_logger(__name__)

    with pipeline_run(run_id):
        logger.info("message_routed", key="2026.02.09_casework_ico_org_uk_10-30-45_1a2b3c4d")
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, TextIO

import structlog

RUN_ID_FIELD = "pipeline_run_id"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

_run_id: ContextVar[str | None] = ContextVar("pipeline_run_id", default=None)


def set_correlation_id(run_id: str | None) -> None:
    """Tag subsequent log lines in this context with a pass's run id.

    Args:
        run_id: runId of the pass, or None once the pass is over
    """
    _run_id.set(run_id)


def get_correlation_id() -> str | None:
    """Run id of the pass in progress, or None between passes."""
    return _run_id.get()


@contextmanager
def pipeline_run(run_id: str) -> Iterator[str]:
    """Scope log lines to one pass; the run id is cleared however the pass ends."""
    set_correlation_id(run_id)
    try:
        yield run_id
    finally:
        set_correlation_id(None)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor that stamps the current run id."""
    run_id = _run_id.get()
    if run_id is not None:
        event_dict[RUN_ID_FIELD] = run_id
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    stream: TextIO | None = None,
) -> None:
    """Configure structlog for the CLI.

    Args:
        log_level: One of DEBUG, INFO, WARNING, ERROR (any case)
        json_output: JSON lines for schedulers and log shippers; otherwise
            coloured console output
        stream: Where log lines go, stderr by default

    Raises:
        ValueError: If log_level is not a known level
    """
    level = log_level.upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"Unknown log level '{log_level}'. Use one of: {', '.join(LOG_LEVELS)}")

    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stderr,
        level=getattr(logging, level),
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_correlation_id,
    ]

    if json_output:
        renderers: list[structlog.types.Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Module logger, e.g. get_logger(__name__)."""
    return structlog.get_logger(name)
