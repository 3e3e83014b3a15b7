"""
Scoped temporary workspace for one backup run.

Tools write their intermediate output here (dump directories, captured
stderr, schema files). The directory is removed on every exit path: normal
completion, exceptions, and SIGTERM/SIGHUP, which are turned into
RunInterrupted so that enclosing finally blocks still run.
"""

import os
import shutil
import signal
import logging
import tempfile
import threading
from typing import Optional


logger = logging.getLogger(__name__)

HANDLED_SIGNALS = tuple(
    getattr(signal, name) for name in ('SIGTERM', 'SIGHUP') if hasattr(signal, name)
)


class RunInterrupted(KeyboardInterrupt):
    """Raised inside a run when the process receives a termination signal."""

    def __init__(self, signum: int):
        self.signum = signum
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(f"Interrupted by {name}")


def _raise_interrupted(signum, frame):
    raise RunInterrupted(signum)


class ScopedWorkspace:
    """
    Exclusive temporary directory owned by one backup run.

    Usage:
        with ScopedWorkspace(base_dir) as ws:
            producer.produce(ws)
    """

    def __init__(self, base_dir: Optional[str] = None, prefix: str = 'dbagent_', handle_signals: bool = True):
        """
        Args:
            base_dir: Parent directory (system temp dir when None)
            prefix: Directory name prefix
            handle_signals: Translate SIGTERM/SIGHUP into RunInterrupted while acquired
        """
        self.base_dir = base_dir
        self.prefix = prefix
        self.handle_signals = handle_signals
        self.root = None
        self._previous_handlers = {}

    @property
    def acquired(self) -> bool:
        return self.root is not None and os.path.isdir(self.root)

    def acquire(self) -> str:
        """
        Create the workspace directory.

        Returns:
            Absolute path of the new directory
        """
        if self.root is not None:
            return self.root

        if self.base_dir:
            os.makedirs(self.base_dir, exist_ok=True)

        self._install_signal_handlers()
        try:
            self.root = tempfile.mkdtemp(prefix=self.prefix, dir=self.base_dir)
        except BaseException:
            self._restore_signal_handlers()
            raise

        logger.debug(f"Workspace acquired: {self.root}")
        return self.root

    def release(self):
        """
        Remove the workspace and everything in it.

        Safe to call more than once, and before acquire().
        """
        root, self.root = self.root, None
        try:
            if root and os.path.exists(root):
                shutil.rmtree(root)
                logger.debug(f"Workspace released: {root}")
        except OSError as e:
            logger.warning(f"Failed to remove workspace {root}: {e}")
        finally:
            self._restore_signal_handlers()

    def path(self, *names: str) -> str:
        """Join names below the workspace root."""
        if self.root is None:
            raise RuntimeError("Workspace not acquired")
        return os.path.join(self.root, *names)

    def mkdir(self, *names: str) -> str:
        """Create a sub-directory inside the workspace and return its path."""
        directory = self.path(*names)
        os.makedirs(directory, exist_ok=True)
        return directory

    def stderr_log(self, name: str) -> str:
        """Path of a file used to capture a tool's stderr."""
        return self.path(f"{name}.stderr.log")

    def _install_signal_handlers(self):
        if not self.handle_signals:
            return
        if threading.current_thread() is not threading.main_thread():
            return

        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, _raise_interrupted)

    def _restore_signal_handlers(self):
        handlers, self._previous_handlers = self._previous_handlers, {}
        for signum, handler in handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)

    def __enter__(self) -> 'ScopedWorkspace':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()

    def __repr__(self):
        return f'<ScopedWorkspace {self.root or "(released)"}>'
