"""
Logging setup for a Beefy peer.

Two peers often run side by side in one terminal during development, so
every record is tagged with the room and seat it came from. The tags
come from two places:

- context variables set once by GameSession.start() (client, room, role)
- per-logger extras via ContextLogger.with_context(room_code=..., role=...)

Production peers emit one JSON object per line; development peers get a
compact colored line.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

client_id_var: ContextVar[Optional[str]] = ContextVar("client_id", default=None)
room_id_var: ContextVar[Optional[str]] = ContextVar("room_id", default=None)
role_var: ContextVar[Optional[str]] = ContextVar("role", default=None)

_CONTEXT_VARS = {
    "client_id": client_id_var,
    "room_id": room_id_var,
    "role": role_var,
}

# Tags attached to every record, in output order
CONTEXT_FIELDS = ("client_id", "room_id", "room_code", "role")

LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
RESET = "\033[0m"

NOISY_LOGGERS = ("asyncio", "asyncpg", "redis")


def record_context(record: logging.LogRecord) -> dict[str, str]:
    """Collect the peer tags for a record; record extras win over context vars."""
    tags = {}
    for name in CONTEXT_FIELDS:
        value = getattr(record, name, None)
        if not value and name in _CONTEXT_VARS:
            value = _CONTEXT_VARS[name].get()
        if value:
            tags[name] = value
    return tags


@contextmanager
def peer_context(
    client_id: Optional[str] = None,
    room_id: Optional[str] = None,
    role: Optional[str] = None,
) -> Iterator[None]:
    """Temporarily tag log records with a client, room and role."""
    tokens = [
        (var, var.set(value))
        for var, value in ((client_id_var, client_id), (room_id_var, room_id), (role_var, role))
        if value is not None
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log shipping from deployed peers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(record_context(record))

        if record.levelno >= logging.ERROR:
            entry["source"] = f"{record.pathname}:{record.lineno} in {record.funcName}"
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class DevelopmentFormatter(logging.Formatter):
    """
    Colored single-line output.

    The bracketed tag shows the room (join code when known, else a short
    room id) and the seat, e.g. `[room=ABCD, guest]`.
    """

    def format(self, record: logging.LogRecord) -> str:
        tags = record_context(record)

        where = []
        if "room_code" in tags:
            where.append(f"room={tags['room_code']}")
        elif "room_id" in tags:
            where.append(f"room={tags['room_id'][:8]}")
        if "role" in tags:
            where.append(tags["role"])
        tag = f" [{', '.join(where)}]" if where else ""

        color = LEVEL_COLORS.get(record.levelno, "")
        level = f"{color}{record.levelname:<8}{RESET if color else ''}"
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]

        line = f"{clock} {level} {record.name}{tag} - {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: str = "INFO", environment: str = "development") -> None:
    """
    Install a stdout handler on the root logger.

    Args:
        level: Root log level name.
        environment: "production" selects JSON output.
    """
    handler = logging.StreamHandler(sys.stdout)
    formatter = JSONFormatter() if environment == "production" else DevelopmentFormatter()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(f"Logging ready ({environment}, {level})")


class ContextLogger(logging.LoggerAdapter):
    """
    LoggerAdapter carrying fixed tags.

    Usage:
        log = get_logger(__name__).with_context(room_code="ABCD", role="host")
        log.info("Turn passed")
    """

    def __init__(self, logger: logging.Logger, extra: Optional[dict] = None):
        super().__init__(logger, extra or {})

    def with_context(self, **tags) -> "ContextLogger":
        return ContextLogger(self.logger, {**self.extra, **tags})

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name))
