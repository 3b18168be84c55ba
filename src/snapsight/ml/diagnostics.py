"""Scoped suppression of backend diagnostics."""

from __future__ import annotations

import logging
import warnings
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


@contextmanager
def suppressed_diagnostics(*logger_names: str, level: int = logging.ERROR) -> Iterator[None]:
    """Silence Python warnings and raise the given loggers to ``level``.

    Logger levels and the warnings filter state are restored on exit,
    including when the body raises.

    The scope is in time, not per thread: logger levels and the warnings
    filter list are process-global, so warnings and records emitted by other
    threads (the event loop included) while the body runs are silenced too.
    """
    loggers = [logging.getLogger(name) for name in logger_names]
    previous = [lg.level for lg in loggers]
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        for lg in loggers:
            lg.setLevel(level)
        try:
            yield
        finally:
            for lg, old_level in zip(loggers, previous, strict=True):
                lg.setLevel(old_level)
