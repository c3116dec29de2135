from __future__ import annotations

import enum
import logging
from typing import Any


class NDLogger:
    """Key=value structured logging on top of a stdlib logging.Logger."""

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None) -> None:
        self._logger = logger
        self._context: dict[str, Any] = dict(context or {})

    def bind(self, **ctx: Any) -> NDLogger:
        return NDLogger(self._logger, {**self._context, **ctx})

    def _format(self, event: str, extra: dict[str, Any]) -> str:
        fields = {**self._context, **extra}
        return " ".join([event, *(f"{k}={_render(v)}" for k, v in fields.items())])

    def _log(self, level: int, event: str, kw: dict[str, Any], **opts: Any) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, self._format(event, kw), **opts)

    def debug(self, event: str, **kw: Any) -> None:
        self._log(logging.DEBUG, event, kw)

    def info(self, event: str, **kw: Any) -> None:
        self._log(logging.INFO, event, kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._log(logging.WARNING, event, kw)

    def error(self, event: str, **kw: Any) -> None:
        self._log(logging.ERROR, event, kw)

    def exception(self, event: str, **kw: Any) -> None:
        self._log(logging.ERROR, event, kw, exc_info=True)


def _render(value: Any) -> str:
    if isinstance(value, enum.Enum):
        value = value.value
    text = str(value)
    # Quote empty or spaced values so a line still splits cleanly on whitespace.
    if not text or " " in text:
        return repr(text)
    return text


def get_logger(name: str = "pgleaderlease") -> NDLogger:
    return NDLogger(logging.getLogger(name))
