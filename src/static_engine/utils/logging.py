"""Logging setup for the API server and the generation workers.

Every record, from structlog or stdlib loggers, goes through one structlog
chain. While a worker handles a task, records carry the ``variation_id`` of
the ad being generated so one variation can be followed across retries.
"""

import logging
import sys
from contextvars import ContextVar

import structlog

# Set by GenerationProcessor.handle for the duration of one task
current_variation_id: ContextVar[str | None] = ContextVar("current_variation_id", default=None)


def add_variation_id(_logger, _method_name, event_dict):
    """Add the variation being processed, if any, to the event."""
    variation_id = current_variation_id.get()
    if variation_id:
        event_dict["variation_id"] = variation_id
    return event_dict


def setup_logging(log_level: str = "INFO", json_output: bool = False) -> None:
    """Route all application and library logs to stderr.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: Emit one JSON object per line (LOG_JSON=true) instead of console lines
    """
    # Applied to structlog and stdlib records alike
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_variation_id,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # stdlib records (logging.getLogger(__name__)) go through the same chain
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)
    root_logger.setLevel(getattr(logging, log_level.upper()))

    # HTTP, Gemini, storage and sqlite clients log every call at INFO
    noisy_loggers = [
        "httpx",
        "httpcore",
        "google_genai",
        "google_genai.models",
        "aiosqlite",
        "botocore",
        "boto3",
        "urllib3.connectionpool",
    ]
    for logger_name in noisy_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def set_variation_context(variation_id: str) -> None:
    """Tag subsequent records in this context with ``variation_id``.

    Args:
        variation_id: ID of the generated_ads record being processed
    """
    current_variation_id.set(variation_id)


def clear_variation_context() -> None:
    """Stop tagging records once the task is done."""
    current_variation_id.set(None)
