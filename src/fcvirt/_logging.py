"""Logging setup shared by every fcvirt module.

fcvirt is a library first: importing it only attaches a NullHandler to the
``fcvirt`` logger and applies ``FCVIRT_LOG_LEVEL`` when set. Output handlers
are installed only by ``configure_logging()``, which the ``fcvirt`` command
calls at startup.

Lines on stderr look like:
    INFO [2026-10-18 09:14:03] fcvirt.firecracker_vm - VM started

Records are handed to a bounded in-process queue and written by a listener
thread, so a VM lifecycle coroutine never waits on a slow terminal. Records
that do not fit in the queue are discarded.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "fcvirt"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# FCVIRT_LOG_LEVEL=DEBUG|INFO|WARNING|ERROR; unknown names are ignored
_level_name = os.environ.get("FCVIRT_LOG_LEVEL", "").strip().upper()
_level = logging.getLevelNamesMapping().get(_level_name)
if _level:
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_level)

_LINE_FORMAT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_MAX_PENDING_RECORDS = 4096


class _StderrWriter(logging.Handler):
    """Formats a record and prints it dimmed on stderr through click.

    Only ever called from the listener thread.
    """

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(logging.Formatter(fmt=_LINE_FORMAT, datefmt=_TIME_FORMAT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass  # non-blocking stderr is full
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueuedStderrHandler(logging.handlers.QueueHandler):
    """Enqueues records for a background _StderrWriter; full queue drops the record."""

    def __init__(self) -> None:
        pending: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_MAX_PENDING_RECORDS)
        super().__init__(pending)
        self._listener = logging.handlers.QueueListener(pending, _StderrWriter(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Consumer lives in this process; the record is passed as-is
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Module logger under the ``fcvirt`` hierarchy (call with ``__name__``)."""
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Send fcvirt log records to stderr. Safe to call more than once.

    Args:
        level: Level for the ``fcvirt`` logger; overrides FCVIRT_LOG_LEVEL.
        quiet: Only report errors. Wins over ``level``.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _QueuedStderrHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_QueuedStderrHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
