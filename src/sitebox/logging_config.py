"""structlog setup for the sitebox CLI.

Log lines go to stderr so `--json` output on stdout stays machine readable.
Lifecycle operations bind ``site_id`` and ``operation`` as contextvars, so
every line emitted while a site starts, stops or is deleted carries them,
including lines from the backends and the database layer.
"""

import logging
import sys
from typing import Literal, TextIO

import structlog
from structlog.types import Processor

NOISY_LOGGERS = ("httpx", "httpcore", "docker", "urllib3")


def setup_logging(
    log_format: Literal["json", "console"] = "console",
    log_level: str = "INFO",
    stream: TextIO | None = None,
) -> None:
    """Configure structlog on top of stdlib logging.

    Args:
        log_format: "json" for one object per line, "console" for humans
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        stream: Defaults to stderr
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stderr,
        level=numeric_level,
        force=True,
    )
    # Client libraries log every request at DEBUG/INFO
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=False),
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.MODULE,
                structlog.processors.CallsiteParameter.LINENO,
            }
        ),
        structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(exception_formatter=structlog.dev.plain_traceback)
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.get_logger().debug("logging_configured", log_format=log_format, log_level=log_level)
