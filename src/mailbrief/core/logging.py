"""structlog setup for mailbrief.

Every entry logged while a cycle runs carries that cycle's `cycle_id`,
bound through structlog's contextvars so tasks spawned by the cycle
inherit it.

Usage:
    from mailbrief.core.logging import bind_cycle_id, clear_cycle_id, get_logger

    logger = get_logger(__name__)
    bind_cycle_id(cycle_id)
    logger.info("envelope_ready_for_briefing", envelope_id="INBOX|42")
    clear_cycle_id()
"""

import logging
import sys

import structlog


def bind_cycle_id(cycle_id: str) -> None:
    structlog.contextvars.bind_contextvars(cycle_id=cycle_id)


def clear_cycle_id() -> None:
    structlog.contextvars.unbind_contextvars("cycle_id")


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: One JSON object per line (scheduler) instead of the
            colored console format (one-shot commands)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
