"""
Temporary resource tracking

Every ephemeral path of a run carries the same random token so concurrent
invocations never collide, and everything is removed exactly once when the
process ends, whichever way it ends.
"""
import atexit
import secrets
import shutil
import signal
import string
import sys
import threading
from pathlib import Path
from typing import Callable, List

from .logging_config import get_logger


TOKEN_ALPHABET = string.ascii_letters + string.digits
HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)


def generate_token(length: int = 20) -> str:
    return ''.join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


class TempTracker:
    """Allocates token-tagged temp paths and tears them down once"""

    def __init__(self, temp_dir: str = "/tmp", prefix: str = "virt-tool",
                 token_length: int = 20):
        self.temp_dir = Path(temp_dir)
        self.prefix = prefix
        self.token = generate_token(token_length)
        self._paths: List[Path] = []
        self._callbacks: List[Callable[[], None]] = []
        self._lock = threading.RLock()
        self._cleaned = False
        self.logger = get_logger("virt_tool.resources")

    @property
    def cleaned(self) -> bool:
        return self._cleaned

    def path(self, label: str, suffix: str = "") -> Path:
        """Path namespaced by this run's token; nothing is created"""
        return self.temp_dir / f"{self.prefix}-{label}.{self.token}{suffix}"

    def register(self, path: Path) -> Path:
        with self._lock:
            self._paths.append(Path(path))
        return Path(path)

    def make_dir(self, label: str) -> Path:
        directory = self.register(self.path(label))
        directory.mkdir(parents=True, exist_ok=False)
        return directory

    def release(self, path: Path) -> None:
        """Remove one tracked path early"""
        self._remove(Path(path))
        with self._lock:
            self._paths = [p for p in self._paths if p != Path(path)]

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def cleanup(self) -> None:
        with self._lock:
            if self._cleaned:
                return
            self._cleaned = True
            paths = list(self._paths)
            callbacks = list(self._callbacks)

        for path in paths:
            self._remove(path)
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                self.logger.warning("Cleanup callback failed", error=str(e))
        self.logger.info("Temporary resources cleaned up", token=self.token, paths=len(paths))

    def _remove(self, path: Path) -> None:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path, ignore_errors=True)
        else:
            path.unlink(missing_ok=True)

    def _handle_signal(self, signum, frame) -> None:
        self.logger.warning("Terminated by signal", signal=signal.Signals(signum).name)
        self.cleanup()
        sys.exit(128 + signum)

    def install(self) -> None:
        """Register cleanup for normal exit, errors and termination signals"""
        atexit.register(self.cleanup)
        for signum in HANDLED_SIGNALS:
            signal.signal(signum, self._handle_signal)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()

