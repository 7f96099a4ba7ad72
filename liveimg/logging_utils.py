from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

DEFAULT_LOG_PATH = "logs/liveimg-build.log"
FALLBACK_LOG_NAME = "liveimg-build.log"

# Targets build on worker threads, so the thread name tells their lines apart.
LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_lock = threading.Lock()
_handlers: List[logging.Handler] = []
_console: Optional[logging.Handler] = None
_log_path: Optional[str] = None


def _formatter() -> logging.Formatter:
    return logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)


def _open_log_file(log_path: str) -> tuple[logging.FileHandler, str]:
    try:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_path, encoding="utf-8"), log_path
    except OSError:
        fallback = str(Path.cwd() / FALLBACK_LOG_NAME)
        return logging.FileHandler(fallback, encoding="utf-8"), fallback


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    *,
    verbose: bool = False,
    console: bool = True,
) -> str:
    """Configure process-wide logging for a build.

    The log file always receives DEBUG, including captured tool output. The
    console shows INFO, or DEBUG with `verbose`. If the log directory cannot
    be created the file goes to ./liveimg-build.log instead.

    Later calls keep the first file and only adjust the console level.
    Returns the log file actually in use.
    """

    global _console, _log_path

    console_level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()

    with _lock:
        if _log_path is not None:
            if _console is not None:
                _console.setLevel(console_level)
            return _log_path

        root.setLevel(logging.DEBUG)

        file_handler, chosen = _open_log_file(log_path)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_formatter())
        root.addHandler(file_handler)
        _handlers.append(file_handler)

        if console:
            _console = logging.StreamHandler()
            _console.setLevel(console_level)
            _console.setFormatter(_formatter())
            root.addHandler(_console)
            _handlers.append(_console)

        _log_path = chosen

    logging.getLogger(__name__).info("Logging to %s (requested %s)", chosen, log_path)
    return chosen


def reset_logging() -> None:
    """Detach and close the handlers installed by configure_logging."""

    global _console, _log_path

    root = logging.getLogger()
    with _lock:
        for h in _handlers:
            root.removeHandler(h)
            h.close()
        _handlers.clear()
        _console = None
        _log_path = None


class _ThreadFilter(logging.Filter):
    def __init__(self, thread_id: int) -> None:
        super().__init__()
        self.thread_id = thread_id

    def filter(self, record: logging.LogRecord) -> bool:
        return record.thread == self.thread_id


@contextmanager
def target_log(path: str | Path) -> Iterator[str]:
    """Copy everything logged by the current thread into `path` while active.

    One target builds on one thread, so this gives each target its own log
    next to its build report, commands and tool output included.
    """

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, mode="w", encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_formatter())
    handler.addFilter(_ThreadFilter(threading.get_ident()))

    root = logging.getLogger()
    root.addHandler(handler)
    try:
        yield str(p)
    finally:
        root.removeHandler(handler)
        handler.close()
