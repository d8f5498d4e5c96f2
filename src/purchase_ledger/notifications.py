"""User-facing success and failure messages."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Protocol

from .exceptions import (
    ConcurrencyConflict,
    NotFoundError,
    PartialReconciliationError,
    PersistenceError,
    ValidationError,
)

log = logging.getLogger(__name__)

GENERIC_FAILURE = "The operation could not be completed. An operator has been notified."


class Notifier(Protocol):
    """Sink for messages shown to whoever triggered an operation."""

    def success(self, message: str) -> None: ...

    def failure(self, message: str) -> None: ...


class LogNotifier:
    """Notifier writing messages to the package log."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or log

    def success(self, message: str) -> None:
        self._logger.info(message)

    def failure(self, message: str) -> None:
        self._logger.warning(message)


@contextmanager
def report_outcome(notifier: Notifier, operation: str, success_message: str, **ids: Optional[str]) -> Iterator[None]:
    """Tell *notifier* how the wrapped operation ended, then let errors propagate.

    Input and conflict errors are passed on verbatim. Store failures get a
    generic message, and the diagnostic an operator needs goes to the log.
    """

    try:
        yield
    except (ValidationError, NotFoundError, ConcurrencyConflict) as exc:
        notifier.failure(str(exc))
        raise
    except PartialReconciliationError as exc:
        log.error(
            "Partial reconciliation during %s (%s); compare ledger and stock by hand: %s",
            operation,
            _describe(ids),
            exc,
        )
        notifier.failure(GENERIC_FAILURE)
        raise
    except PersistenceError as exc:
        log.error("Store failure during %s (%s): %s", operation, _describe(ids), exc)
        notifier.failure(GENERIC_FAILURE)
        raise
    else:
        notifier.success(success_message)


def _describe(ids: dict[str, Optional[str]]) -> str:
    return ", ".join(f"{key}={value}" for key, value in ids.items()) or "no ids"
