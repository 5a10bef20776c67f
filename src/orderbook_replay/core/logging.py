from __future__ import annotations

import logging

from rich.logging import RichHandler

_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime"}

_QUIET_LOGGERS = ("websockets", "asyncio")


class ExtraFieldsFormatter(logging.Formatter):
    """Append ``extra={...}`` context to the rendered message as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if not extras:
            return message
        rendered = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        return f"{message} [{rendered}]"


def configure_logging(level: str = "INFO") -> None:
    handler = RichHandler(rich_tracebacks=True, show_path=False)
    handler.setFormatter(ExtraFieldsFormatter("%(name)s: %(message)s"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))
