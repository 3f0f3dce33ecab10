"""
virt-tool - interactive export and import of libvirt virtual machines

Each VM is written as an encrypted 7-Zip archive holding its domain XML and
disk images, with:
- SHA-1 sidecars per disk image inside the archive
- A detached SHA-256 checksum for the archive itself
- Optional podman container carrying 7z for immutable hosts
- SELinux relabeling of VM storage after containerized runs
"""

__version__ = "1.0.0"

from .models import Action, ArchiveLayout, DiskImage, StepStatus, VMState, WorkflowResult
from .config import settings

__all__ = [
    'Action',
    'ArchiveLayout',
    'DiskImage',
    'StepStatus',
    'VMState',
    'WorkflowResult',
    'settings'
]
