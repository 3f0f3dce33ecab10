"""
Core models for virt-tool
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional


class Action(Enum):
    """Top-level menu action"""
    EXPORT = "Export"
    IMPORT = "Import"
    QUIT = "Quit"


class VMState(Enum):
    """Virtual Machine state enumeration"""
    RUNNING = "running"
    PAUSED = "paused"
    SHUTDOWN = "shutdown"
    CRASHED = "crashed"
    SUSPENDED = "suspended"
    UNKNOWN = "unknown"


class StepStatus(Enum):
    """Workflow outcome"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class VMInfo:
    """Virtual Machine information"""
    name: str
    uuid: str
    state: VMState
    disk_paths: List[str] = field(default_factory=list)

    @classmethod
    def from_libvirt_domain(cls, domain) -> 'VMInfo':
        """Create VMInfo from libvirt domain object"""
        state_map = {
            0: VMState.UNKNOWN,
            1: VMState.RUNNING,
            2: VMState.UNKNOWN,
            3: VMState.PAUSED,
            4: VMState.SHUTDOWN,
            5: VMState.SHUTDOWN,
            6: VMState.CRASHED,
            7: VMState.SUSPENDED
        }

        return cls(
            name=domain.name(),
            uuid=domain.UUIDString(),
            state=state_map.get(domain.info()[0], VMState.UNKNOWN),
        )


@dataclass
class ArchiveLayout:
    """Where the artifacts of one VM live relative to the tool directory"""
    base_dir: Path
    vm_name: str

    @property
    def archive(self) -> Path:
        return self.base_dir / f"{self.vm_name}.7z"

    @property
    def checksum_file(self) -> Path:
        return self.base_dir / f"{self.vm_name}.7z.sha256"

    @property
    def workdir(self) -> Path:
        return self.base_dir / self.vm_name

    @property
    def metadata_file(self) -> Path:
        return self.workdir / f"{self.vm_name}.xml"


@dataclass
class DiskImage:
    """A VM disk image and the name of its sha1 sidecar"""
    path: Path

    @property
    def folder(self) -> Path:
        return self.path.parent

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def sidecar_name(self) -> str:
        return f"{self.path.name}.sha1"

    @property
    def sidecar(self) -> Path:
        return self.folder / self.sidecar_name


@dataclass
class WorkflowResult:
    """Outcome of one export or import run"""
    action: Action
    vm_name: str
    status: StepStatus = StepStatus.RUNNING
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    steps: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        """Calculate run duration in seconds"""
        if self.end_time and self.start_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    def complete_step(self, step: str) -> None:
        self.steps.append(step)

    def finish(self, error: Optional[Exception] = None) -> None:
        self.end_time = datetime.now()
        if error is None:
            self.status = StepStatus.COMPLETED
        else:
            self.status = StepStatus.FAILED
            self.error_message = str(error)
