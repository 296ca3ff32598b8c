from __future__ import annotations

import logging
import pathlib
import shutil
import signal
import threading
from types import FrameType
from typing import Any

logger = logging.getLogger("image-pull")

GUARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class InterruptGuard:
    """Removes an in-progress path if the guarded block does not complete

    Use as a context manager around a fetch. On SIGINT/SIGTERM the path is
    removed, `interrupted` is set and the previously installed handler takes
    over (KeyboardInterrupt for the default SIGINT handler, SystemExit for a
    default SIGTERM). Signals the process ignores stay ignored and leave the
    path alone. An exception leaving the block also removes the path.

    Signal handlers can only be installed from the main thread: elsewhere
    only the exception cleanup applies."""

    def __init__(self, path: pathlib.Path, signals: tuple[int, ...] = GUARDED_SIGNALS):
        self.path = path
        self.signals = signals
        self.previous: dict[int, Any] = {}
        self.interrupted = False

    def __enter__(self) -> InterruptGuard:
        if threading.current_thread() is threading.main_thread():
            for signum in self.signals:
                self.previous[signum] = signal.signal(signum, self.handle)
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> bool:
        self.restore()
        if exc_type is not None:
            self.cleanup()
        return False

    def restore(self):
        for signum, handler in self.previous.items():
            signal.signal(signum, handler)
        self.previous = {}

    def cleanup(self):
        """remove the guarded path, whatever state it is in"""
        if self.path.is_dir():
            shutil.rmtree(self.path, ignore_errors=True)
        elif self.path.exists():
            logger.debug(f"Removing incomplete {self.path}")
            self.path.unlink(missing_ok=True)

    def handle(self, signum: int, frame: FrameType | None):
        previous = self.previous.get(signum)
        if previous is None:
            # not installed from python
            previous = signal.SIG_DFL
        if previous == signal.SIG_IGN:
            return
        logger.warning(f"Interrupted. Removing incomplete {self.path}")
        self.interrupted = True
        self.cleanup()
        self.restore()
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            if signum == signal.SIGINT:
                raise KeyboardInterrupt
            raise SystemExit(128 + signum)
