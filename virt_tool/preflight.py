"""
Environment checks run before any workflow touches a VM
"""
import shutil
from pathlib import Path

from .exceptions import PreconditionError
from .logging_config import get_logger
from .privilege import CommandRunner


class Preflight:
    """Fail-fast checks; each raises PreconditionError"""

    def __init__(self, config, runner: CommandRunner):
        self.config = config
        self.runner = runner
        self.logger = get_logger("virt_tool.preflight")

    def _manager_ui_path(self) -> str:
        binary = self.config.manager_ui_binary
        return shutil.which(binary) or f"/usr/bin/{binary}"

    def check_manager_not_running(self) -> None:
        """virt-manager must be closed so the registry is not mutated concurrently"""
        ui_path = self._manager_ui_path()
        message = (f"{self.config.manager_ui_binary} seems to be running, "
                   "please close it before running this tool.")

        pgrep = self.runner.run_unprivileged(['pgrep', '-f', ui_path], check=False, capture=True)
        if pgrep.returncode == 0:
            self.logger.warning("Manager UI detected by pgrep", path=ui_path)
            raise PreconditionError(message)

        ps = self.runner.run_unprivileged(['ps', 'ax'], check=False, capture=True)
        if f"/usr/bin/{self.config.manager_ui_binary}" in (ps.stdout or ""):
            self.logger.warning("Manager UI detected in process list", path=ui_path)
            raise PreconditionError(message)

    def check_working_directory(self, script_dir: Path) -> None:
        """Backups are written relative to the tool's own directory"""
        script_dir = Path(script_dir).resolve()
        if Path.cwd().resolve() != script_dir:
            raise PreconditionError(f"Please run the tool in its directory: {script_dir}")

    def check_required_tools(self) -> None:
        if shutil.which('virsh') is None:
            raise PreconditionError(
                "virsh command could not be found. Please ensure 'virtinst' is installed.")

        if not self.config.use_container and shutil.which('7z') is None:
            raise PreconditionError(
                "7z command could not be found. Please ensure 'p7zip-full' is installed.")

    def run_all(self, script_dir: Path) -> None:
        self.check_manager_not_running()
        self.check_working_directory(script_dir)
        self.check_required_tools()
        self.logger.info("Preflight checks passed", script_dir=str(script_dir))
