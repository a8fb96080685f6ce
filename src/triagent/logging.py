"""structlog setup for the command gate.

Every gateway call runs inside command_context(), so log lines emitted by
the ledger and the backends while serving that call carry the command and
backend without passing them around. Approval tokens are bearer secrets
and are masked by a processor before any renderer sees them.
"""

import logging
import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator, MutableMapping

import structlog
from structlog.types import Processor

if TYPE_CHECKING:
    from triagent.config import Settings

SECRET_FIELDS = frozenset({"token", "approval_token"})
MASK = "***"


def mask_secret_fields(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask approval tokens that slipped into an event."""
    for key in SECRET_FIELDS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = MASK
    return event_dict


def configure_logging(settings: "Settings | None" = None) -> None:
    """Set up structlog and stdlib logging from settings.

    Without settings only warnings are shown, rendered for the console.
    """
    level = logging.WARNING
    renderer_kind = "console"
    if settings is not None:
        level = getattr(logging, settings.log_level.upper(), logging.INFO)
        renderer_kind = settings.log_format

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        mask_secret_fields,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if renderer_kind == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", level=level, handlers=[logging.StreamHandler(sys.stderr)])
    # asyncssh logs every channel open at INFO
    logging.getLogger("asyncssh").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def command_context(command: str, backend: str | None) -> Iterator[None]:
    """Tag every log line emitted while one gateway call is served.

    The bindings live in contextvars, so concurrent gateway calls on the
    same event loop do not see each other's command.
    """
    with structlog.contextvars.bound_contextvars(command=command, backend=backend):
        yield


class Loggers:
    """Named loggers, one per component."""

    @staticmethod
    def gateway() -> structlog.stdlib.BoundLogger:
        return get_logger("triagent.gate")

    @staticmethod
    def approval() -> structlog.stdlib.BoundLogger:
        return get_logger("triagent.hitl")

    @staticmethod
    def backends() -> structlog.stdlib.BoundLogger:
        return get_logger("triagent.backends")

    @staticmethod
    def config() -> structlog.stdlib.BoundLogger:
        return get_logger("triagent.config")

    @staticmethod
    def audit() -> structlog.stdlib.BoundLogger:
        return get_logger("triagent.audit")
