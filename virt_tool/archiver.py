"""
Wrappers around 7z, the sha*sum tools and chcon
"""
import shlex
from pathlib import Path
from typing import Iterable, List, Sequence

from .container import ContainerProvisioner
from .exceptions import CommandError, StepError
from .logging_config import get_logger
from .models import DiskImage
from .privilege import CommandRunner


class SevenZip:
    """Password protected 7z archives, on the host or inside the container"""

    def __init__(self, runner: CommandRunner, container: ContainerProvisioner):
        self.runner = runner
        self.container = container
        self.logger = get_logger("virt_tool.archiver")

    def _run(self, command: List[str], cwd: Path, volumes: Iterable[Path] = (),
             privileged: bool = False, check: bool = True):
        if self.container.enabled:
            wrapped = self.container.wrap(command, volumes=volumes, workdir=cwd)
            return self.runner.run(wrapped, check=check)
        if privileged:
            return self.runner.run(command, cwd=cwd, check=check)
        return self.runner.run_unprivileged(command, cwd=cwd, check=check)

    def add(self, archive: Path, members: Sequence[str], passphrase: str, cwd: Path,
            volumes: Iterable[Path] = (), privileged: bool = False) -> None:
        """Create or append to an archive with encrypted headers"""
        command = ['7z', 'a', f'-p{passphrase}', '-mhe=on', str(archive), *[str(m) for m in members]]
        self._run(command, cwd, volumes, privileged)
        self.logger.info("Added to archive", archive=str(archive), members=len(members))

    def extract(self, archive: Path, destination: Path, passphrase: str,
                volumes: Iterable[Path] = ()) -> None:
        command = ['7z', 'x', f'-p{passphrase}', str(archive)]
        self._run(command, destination, [archive.parent, *volumes])
        self.logger.info("Archive extracted", archive=str(archive), destination=str(destination))

    def test(self, archive: Path, passphrase: str) -> bool:
        """Open the archive read-only; False when the passphrase or data is bad"""
        if not passphrase:
            return False
        command = ['7z', 't', f'-p{passphrase}', str(archive)]
        result = self._run(command, archive.parent, [archive.parent], check=False)
        return result.returncode == 0


class Checksums:
    """sha1 sidecars per disk and a sha256 sidecar per archive"""

    def __init__(self, runner: CommandRunner):
        self.runner = runner
        self.logger = get_logger("virt_tool.archiver")

    def write_sha1(self, disk: DiskImage) -> Path:
        """Write <disk>.sha1 next to the disk, referencing it by basename"""
        script = f"sha1sum {shlex.quote(disk.name)} > {shlex.quote(disk.sidecar_name)}"
        self.runner.run(['sh', '-c', script], cwd=disk.folder)
        return disk.sidecar

    def verify_sha1(self, folder: Path, sidecar_name: str) -> bool:
        result = self.runner.run(['sha1sum', '-c', sidecar_name], cwd=folder, check=False)
        return result.returncode == 0

    def write_sha256(self, folder: Path, name: str) -> Path:
        result = self.runner.run_unprivileged(['sha256sum', name], cwd=folder, capture=True)
        sidecar = Path(folder) / f"{name}.sha256"
        sidecar.write_text(result.stdout)
        return sidecar

    def verify_sha256(self, folder: Path, sidecar_name: str) -> bool:
        if not (Path(folder) / sidecar_name).is_file():
            self.logger.warning("Checksum file missing", sidecar=sidecar_name)
            return False
        result = self.runner.run_unprivileged(['sha256sum', '-c', sidecar_name],
                                              cwd=folder, check=False)
        return result.returncode == 0


class SELinuxRelabeler:
    """Restores the virt_image_t context that container bind mounts replace"""

    def __init__(self, config, runner: CommandRunner):
        self.config = config
        self.runner = runner
        self.logger = get_logger("virt_tool.archiver")

    def restore(self, folder: Path) -> None:
        """Relabel the folder and its immediate children"""
        context = self.config.selinux_context_args
        children = f"chcon {shlex.join(context)} {shlex.quote(str(folder))}/*"
        try:
            self.runner.run(['chcon', *context, str(folder)])
            self.runner.run(['sh', '-c', children])
        except CommandError as e:
            raise StepError("restore_selinux_context",
                            "Failed to set SELinux security context!",
                            details={'folder': str(folder)}) from e
        self.logger.info("SELinux context restored", folder=str(folder))
