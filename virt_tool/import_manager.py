"""
Import a VM from an archive written by the export workflow
"""
import shutil
from pathlib import Path
from typing import List

from .exceptions import CommandError, PreconditionError, StepError
from .models import Action, ArchiveLayout, WorkflowResult
from .ui import banner, fail, info, success
from .workflow import Workflow


SIDECAR_SUFFIX = ".sha1"


class ImportManager(Workflow):
    """Checksum gates, extraction, disk relocation and VM definition"""

    action = Action.IMPORT

    @staticmethod
    def available_archives(base_dir: Path) -> List[str]:
        """VM names offered for import: basenames of *.7z beside the tool"""
        return sorted({p.name[:-len(".7z")] for p in Path(base_dir).glob("*.7z") if p.is_file()})

    def check_archive(self, vm_name: str) -> ArchiveLayout:
        layout = self.layout(vm_name)
        if not layout.archive.is_file():
            raise PreconditionError(f"No .7z file found for {vm_name}")
        return layout

    def _execute(self, result: WorkflowResult, vm_name: str, passphrase: str) -> None:
        layout = self.check_archive(vm_name)
        self.ensure_container()

        self.verify_archive_checksum(layout)
        result.complete_step("verify_archive_checksum")

        self.extract(layout, passphrase)
        result.complete_step("extract")

        disk_names = self.verify_disks(layout)
        result.complete_step("verify_disk_checksums")

        folders = self.relocate_disks(layout, disk_names, result)
        result.complete_step("relocate_disks")

        self.define(layout)
        result.complete_step("define_vm")

        self.restore_labels(folders)

    def verify_archive_checksum(self, layout: ArchiveLayout) -> None:
        banner("Verifying SHA256 checksum for the .7z file...")
        if not self.checksums.verify_sha256(self.base_dir, layout.checksum_file.name):
            raise StepError("verify_archive_checksum", "Checksum verification failed. Exiting...")
        success("Checksum verification successful.")

    def extract(self, layout: ArchiveLayout, passphrase: str) -> None:
        banner("Unpacking the 7zip file...")
        if layout.workdir.exists():
            raise StepError("extract", f"The directory {layout.vm_name} already exists, exiting...")
        layout.workdir.mkdir()
        try:
            self.archiver.extract(layout.archive, layout.workdir, passphrase)
        except CommandError as e:
            raise StepError("extract", "Unarchiving") from e
        success("Unarchiving")

    def verify_disks(self, layout: ArchiveLayout) -> List[str]:
        """Check every extracted sidecar; returns the names of the disks they cover"""
        disk_names = []
        for sidecar in sorted(layout.workdir.glob(f"*{SIDECAR_SUFFIX}")):
            disk_name = sidecar.name[:-len(SIDECAR_SUFFIX)]
            banner("Verifying SHA1 checksum for:", disk_name)
            if not self.checksums.verify_sha1(layout.workdir, sidecar.name):
                raise StepError("verify_disk_checksums", "Checksum verification failed. Exiting...",
                                details={'disk': disk_name})
            success("Checksum verification successful.")
            disk_names.append(disk_name)
        return disk_names

    def relocate_disks(self, layout: ArchiveLayout, disk_names: List[str],
                       result: WorkflowResult) -> List[Path]:
        """Move each disk to the path its metadata declares, never overwriting"""
        if not layout.metadata_file.is_file():
            raise StepError("relocate_disks", f"{layout.metadata_file.name} is missing from the archive")
        xml_desc = layout.metadata_file.read_text(encoding='utf-8')

        banner("Moving the VM disks...")
        folders = []
        for disk_name in disk_names:
            destination = self.vm_manager.find_disk_destination(xml_desc, disk_name)
            if destination is None:
                raise StepError("relocate_disks", "Couldn't find a disk path in the XML file, exiting...",
                                details={'disk': disk_name})

            folder = destination.parent
            try:
                self.runner.run(['mkdir', '-p', str(folder)])
            except CommandError as e:
                raise StepError("relocate_disks", f"Couldn't create {folder}") from e
            folders.append(folder)

            if self.runner.run(['test', '-e', str(destination)], check=False).returncode == 0:
                fail(f"File {disk_name} already exists in the destination. Skipping copy.")
                result.skipped.append(str(destination))
                self.logger.warning("Destination occupied, disk skipped", destination=str(destination))
                continue

            info(f"Moving {disk_name} to {folder}")
            try:
                self.runner.run(['mv', str(layout.workdir / disk_name), str(folder)])
            except CommandError as e:
                raise StepError("relocate_disks", f"Failed to move {disk_name}") from e
            success(f"Moved {disk_name} to {folder}.")

        return folders

    def define(self, layout: ArchiveLayout) -> None:
        vm_name = layout.vm_name
        banner("Defining VM:", layout.metadata_file.name)
        if self.vm_manager.vm_exists(vm_name):
            raise StepError("define_vm", f"A VM with the name '{vm_name}' already exists.")

        if not self.vm_manager.define_vm(layout.metadata_file):
            raise StepError("define_vm", f"Failed to define {vm_name}.")
        success(f"{vm_name} defined successfully.")

        banner("Deleting temporary folder:", f"{vm_name}/")
        shutil.rmtree(layout.workdir)
        success("VM imported!")
