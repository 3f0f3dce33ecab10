"""
Export a VM into an encrypted, checksummed 7z archive
"""
import shutil
from pathlib import Path
from typing import List

from .exceptions import CommandError, PreconditionError, StepError
from .models import Action, ArchiveLayout, DiskImage, WorkflowResult
from .ui import banner, info, success
from .workflow import Workflow


class ExportManager(Workflow):
    """Metadata dump, archive creation, per-disk checksums and verification"""

    action = Action.EXPORT

    def _execute(self, result: WorkflowResult, vm_name: str, passphrase: str) -> None:
        layout = self.layout(vm_name)
        self._check_preconditions(layout)

        self.dump_metadata(layout)
        result.complete_step("dump_metadata")

        self.ensure_container()
        self.seal_metadata(layout, passphrase)
        result.complete_step("compress_metadata")

        disks = self.add_disks(layout, passphrase)
        result.complete_step("archive_disks")

        self.write_archive_checksum(layout)
        result.complete_step("checksum_archive")

        if self.verify_archive(layout):
            result.complete_step("verify_archive")

        self.restore_labels(disk.folder for disk in disks)

    def _check_preconditions(self, layout: ArchiveLayout) -> None:
        vm_name = layout.vm_name
        if not self.vm_manager.vm_exists(vm_name):
            raise PreconditionError(f"VM '{vm_name}' does not exist.")

        if layout.workdir.exists():
            raise PreconditionError(f"The directory {vm_name} already exists, exiting...")

        if layout.archive.exists():
            if not self.prompter.confirm(
                    f"{layout.archive.name} already exists. Replace it?", default=False):
                raise PreconditionError(f"Keeping the existing {layout.archive.name}, nothing exported.")
            layout.archive.unlink()
            layout.checksum_file.unlink(missing_ok=True)
            self.logger.warning("Replaced existing archive", archive=str(layout.archive))

    def dump_metadata(self, layout: ArchiveLayout) -> None:
        layout.workdir.mkdir()
        banner("Exporting metadata for VM:", layout.vm_name)
        if not self.vm_manager.export_vm_definition(layout.vm_name, layout.metadata_file):
            raise StepError("dump_metadata", "Metadata export")
        success("Metadata export")

    def seal_metadata(self, layout: ArchiveLayout, passphrase: str) -> None:
        """Archive the working directory, then drop it"""
        banner("Compressing and encrypting directory:", f"{layout.vm_name}/")
        members = sorted(entry.name for entry in layout.workdir.iterdir())
        try:
            self.archiver.add(layout.archive, members, passphrase, cwd=layout.workdir,
                              volumes=[self.base_dir])
        except CommandError as e:
            raise StepError("compress_metadata", "Compression") from e
        success("Compression and encryption")

        banner("Removing the temporary directory:", f"{layout.vm_name}/")
        shutil.rmtree(layout.workdir)
        success("Cleanup")

    def add_disks(self, layout: ArchiveLayout, passphrase: str) -> List[DiskImage]:
        """Append each disk and its sha1 sidecar; stops at the first failure"""
        sources = self.vm_manager.list_block_devices(layout.vm_name)
        if sources is None:
            raise StepError("archive_disks", f"Couldn't list the disks of {layout.vm_name}, exiting...")
        disks = [DiskImage(Path(p)) for p in sources]

        for disk in disks:
            banner("Generating SHA1 checksum for:", str(disk.path))
            try:
                self.checksums.write_sha1(disk)
            except CommandError as e:
                raise StepError("checksum_disk",
                                f"Couldn't find or create a SHA1 file for {disk.path}") from e
            success("SHA1")

            info("Adding .sha1 file to 7zip file")
            try:
                self._append(layout, disk.sidecar, disk, passphrase)
            except CommandError as e:
                raise StepError("archive_sidecar", "Could not add SHA1 file to 7zip") from e
            finally:
                self.runner.run(['rm', '-f', str(disk.sidecar)], check=False)
            success("SHA1 added to 7zip file")

            banner("Adding VM disk to the 7zip archive:", str(disk.path))
            try:
                self._append(layout, disk.path, disk, passphrase)
            except CommandError as e:
                raise StepError("archive_disk",
                                "Compression failed. Please check the error messages above.",
                                details={'disk': str(disk.path)}) from e
            success("Compression")

        return disks

    def _append(self, layout: ArchiveLayout, member: Path, disk: DiskImage, passphrase: str) -> None:
        self.archiver.add(layout.archive, [str(member)], passphrase, cwd=self.base_dir,
                          volumes=[self.base_dir, disk.folder], privileged=True)

    def write_archive_checksum(self, layout: ArchiveLayout) -> None:
        banner("Generating SHA256 checksum for 7zip file:", layout.archive.name)
        try:
            self.checksums.write_sha256(self.base_dir, layout.archive.name)
        except CommandError as e:
            raise StepError("checksum_archive", "SHA256") from e
        success("SHA256")

    def verify_archive(self, layout: ArchiveLayout) -> bool:
        """Optional read-only open with a re-entered passphrase"""
        if not self.prompter.confirm("Do you want to verify the 7zip? It will take a while."):
            banner("Not verifying 7zip")
            return False

        banner("Verifying 7zip:", layout.archive.name)
        info("Enter your passphrase again to verify that we can open the 7zip file:")
        passphrase = self.prompter.password()
        if not self.archiver.test(layout.archive, passphrase):
            raise StepError("verify_archive", "The passphrase didn't work!")
        success("Export and compression with encryption completed successfully.")
        return True
