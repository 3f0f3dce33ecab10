"""
Shared plumbing for the export and import workflows
"""
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Iterable, Optional

from .archiver import Checksums, SELinuxRelabeler, SevenZip
from .container import ContainerProvisioner
from .exceptions import StepError, VirtToolError
from .logging_config import get_logger, LogOperation
from .models import Action, ArchiveLayout, WorkflowResult
from .privilege import CommandRunner
from .resources import TempTracker
from .ui import Prompter, banner, success
from .vm_manager import LibvirtManager


class Workflow:
    """Linear sequence of steps; the first failure aborts the run"""

    action: Action

    def __init__(self, config, base_dir: Path, runner: CommandRunner, tracker: TempTracker,
                 prompter: Prompter, vm_manager: Optional[LibvirtManager] = None,
                 container: Optional[ContainerProvisioner] = None):
        self.config = config
        self.base_dir = Path(base_dir)
        self.runner = runner
        self.prompter = prompter
        self.vm_manager = vm_manager or LibvirtManager(config.libvirt_uri)
        self.container = container or ContainerProvisioner(config, runner, tracker)
        self.archiver = SevenZip(runner, self.container)
        self.checksums = Checksums(runner)
        self.relabeler = SELinuxRelabeler(config, runner)
        self.logger = get_logger(f"virt_tool.{self.action.name.lower()}")

    def layout(self, vm_name: str) -> ArchiveLayout:
        return ArchiveLayout(self.base_dir, vm_name)

    def run(self, vm_name: str, passphrase: str) -> WorkflowResult:
        result = WorkflowResult(action=self.action, vm_name=vm_name)
        try:
            with LogOperation(self.logger, f"{self.action.name.lower()}_vm", vm_name=vm_name):
                try:
                    self._execute(result, vm_name, passphrase)
                except ET.ParseError as e:
                    raise StepError("read_metadata", f"Could not parse the VM metadata: {e}") from e
                except OSError as e:
                    raise StepError("filesystem", str(e),
                                    details={'after_step': result.steps[-1] if result.steps else None}) from e
        except VirtToolError as e:
            result.finish(e)
            self.logger.error("Workflow aborted", vm_name=vm_name, code=e.code,
                              steps_completed=result.steps, **e.details)
            raise
        result.finish()
        return result

    def _execute(self, result: WorkflowResult, vm_name: str, passphrase: str) -> None:
        raise NotImplementedError

    def ensure_container(self) -> None:
        if self.container.ensure():
            success(f"Container {self.config.container_name} created")

    def restore_labels(self, folders: Iterable[Path]) -> None:
        """Containerized runs leave bind-mounted storage with the wrong context"""
        if not self.container.used:
            return
        banner("Restoring SELinux security context for VM storage pool")
        for folder in sorted({Path(f) for f in folders}):
            self.relabeler.restore(folder)
            success("SELinux security context set")
