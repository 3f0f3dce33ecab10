"""
Command execution with optional sudo elevation
"""
import subprocess
import threading
from pathlib import Path
from typing import List, Optional, Sequence, Union

from .exceptions import CommandError
from .logging_config import get_logger, redact


PathLike = Union[str, Path]


class CommandRunner:
    """Runs external commands, elevated or not depending on the strategy"""

    elevated = False

    def __init__(self):
        self.logger = get_logger("virt_tool.privilege")

    def _prefix(self) -> List[str]:
        return []

    def run(self, command: Sequence[str], cwd: Optional[PathLike] = None,
            check: bool = True, capture: bool = False) -> subprocess.CompletedProcess:
        """Run a command with the configured privilege"""
        return self._execute(self._prefix() + [str(c) for c in command], cwd, check, capture)

    def run_unprivileged(self, command: Sequence[str], cwd: Optional[PathLike] = None,
                         check: bool = True, capture: bool = False) -> subprocess.CompletedProcess:
        """Run a command as the invoking user regardless of the strategy"""
        return self._execute([str(c) for c in command], cwd, check, capture)

    def refresh_credentials(self) -> None:
        pass

    def _execute(self, command: List[str], cwd: Optional[PathLike],
                 check: bool, capture: bool) -> subprocess.CompletedProcess:
        self.logger.debug("Running command", command=redact(command),
                          cwd=str(cwd) if cwd else None)
        result = subprocess.run(command, cwd=cwd, capture_output=capture, text=True)

        if result.returncode != 0:
            self.logger.warning("Command exited nonzero", command=redact(command),
                                returncode=result.returncode)
            if check:
                raise CommandError(command, result.returncode, result.stderr or "")
        return result


class DirectRunner(CommandRunner):
    """Runs commands as the invoking user"""
    pass


class SudoRunner(CommandRunner):
    """Runs commands through sudo"""

    elevated = True

    def _prefix(self) -> List[str]:
        return ['sudo']

    def refresh_credentials(self) -> None:
        """Extend the sudo timestamp without running anything"""
        subprocess.run(['sudo', '-v'], check=False)


def make_runner(config) -> CommandRunner:
    """Pick the runner strategy once for the whole process"""
    return SudoRunner() if config.use_sudo else DirectRunner()


class CredentialKeepAlive:
    """Background thread refreshing sudo credentials on a fixed interval"""

    def __init__(self, runner: CommandRunner, interval: float = 120):
        self.runner = runner
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.logger = get_logger("virt_tool.privilege")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if not self.runner.elevated or self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="sudo-keepalive", daemon=True)
        self._thread.start()
        self.logger.info("Credential keep-alive started", interval=self.interval)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.runner.refresh_credentials()
            self._stop_event.wait(self.interval)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            if self._thread is not threading.current_thread():
                self._thread.join(timeout=5)
            self._thread = None
            self.logger.info("Credential keep-alive stopped")
