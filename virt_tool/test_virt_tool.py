"""
Test suite for the libvirt manager and the export/import workflows
"""
import hashlib
from pathlib import Path
from unittest.mock import Mock, patch

import libvirt
import pytest
from typer.testing import CliRunner

from virt_tool import cli
from virt_tool.archiver import Checksums
from virt_tool.config import ToolSettings
from virt_tool.exceptions import CommandError, PreconditionError, StepError
from virt_tool.export_manager import ExportManager
from virt_tool.import_manager import ImportManager
from virt_tool.models import StepStatus
from virt_tool.privilege import DirectRunner
from virt_tool.resources import TempTracker
from virt_tool.vm_manager import LibvirtManager


DOMAIN_XML = """
<domain type='kvm'>
    <name>alpha</name>
    <devices>
        <disk type='file' device='disk'>
            <source file='{images}/alpha.qcow2'/>
            <target dev='vda'/>
        </disk>
        <disk type='file' device='disk'>
            <source file='{images}/data-alpha.qcow2'/>
            <target dev='vdb'/>
        </disk>
        <disk type='file' device='cdrom'>
            <target dev='sda'/>
        </disk>
        <disk type='file' device='cdrom'>
            <source file='{images}/install.iso'/>
            <target dev='sdb'/>
        </disk>
    </devices>
</domain>
"""


def domain_xml(images="/var/lib/libvirt/images"):
    return DOMAIN_XML.format(images=images)


class TestVMManager:
    """Test cases for the libvirt manager"""

    @patch('libvirt.open')
    def test_connect_success(self, mock_libvirt_open):
        mock_conn = Mock()
        mock_libvirt_open.return_value = mock_conn

        vm_manager = LibvirtManager()

        assert vm_manager.connect() is True
        assert vm_manager.conn == mock_conn
        mock_libvirt_open.assert_called_once_with("qemu:///session")

    @patch('libvirt.open')
    def test_connect_failure(self, mock_libvirt_open):
        mock_libvirt_open.side_effect = libvirt.libvirtError("Connection failed")

        vm_manager = LibvirtManager()

        assert vm_manager.connect() is False
        assert vm_manager.conn is None

    @patch('libvirt.open')
    def test_list_vm_names(self, mock_libvirt_open):
        mock_domain = Mock()
        mock_domain.name.return_value = "alpha"
        mock_domain.UUIDString.return_value = "alpha-uuid"
        mock_domain.info.return_value = [5, 0, 0, 2, 0]
        mock_domain.XMLDesc.return_value = domain_xml()
        mock_libvirt_open.return_value.listAllDomains.return_value = [mock_domain]

        vms = LibvirtManager().list_all_vms()

        assert [vm.name for vm in vms] == ["alpha"]
        assert vms[0].state.value == "shutdown"
        assert len(vms[0].disk_paths) == 3

    @patch('libvirt.open')
    def test_vm_exists(self, mock_libvirt_open):
        mock_conn = mock_libvirt_open.return_value
        mock_conn.lookupByName.side_effect = [Mock(), libvirt.libvirtError("no domain")]
        vm_manager = LibvirtManager()

        assert vm_manager.vm_exists("alpha") is True
        assert vm_manager.vm_exists("ghost") is False

    @patch('libvirt.open')
    def test_block_devices_skip_empty_drives(self, mock_libvirt_open):
        mock_libvirt_open.return_value.lookupByName.return_value.XMLDesc.return_value = domain_xml()

        devices = LibvirtManager().list_block_devices("alpha")

        assert devices == ["/var/lib/libvirt/images/alpha.qcow2",
                           "/var/lib/libvirt/images/data-alpha.qcow2",
                           "/var/lib/libvirt/images/install.iso"]

    @patch('libvirt.open')
    def test_block_devices_lookup_failure_is_not_empty_list(self, mock_libvirt_open):
        mock_libvirt_open.return_value.lookupByName.side_effect = libvirt.libvirtError("gone")

        assert LibvirtManager().list_block_devices("alpha") is None

    @patch('libvirt.open')
    def test_export_and_define_round_trip(self, mock_libvirt_open, tmp_path):
        mock_conn = mock_libvirt_open.return_value
        mock_conn.lookupByName.return_value.XMLDesc.return_value = domain_xml()
        vm_manager = LibvirtManager()
        xml_path = tmp_path / "alpha.xml"

        assert vm_manager.export_vm_definition("alpha", xml_path) is True
        assert vm_manager.define_vm(xml_path) is True

        mock_conn.defineXML.assert_called_once_with(domain_xml())

    @patch('libvirt.open')
    def test_define_failure(self, mock_libvirt_open, tmp_path):
        mock_libvirt_open.return_value.defineXML.side_effect = libvirt.libvirtError("invalid")
        xml_path = tmp_path / "alpha.xml"
        xml_path.write_text(domain_xml())

        assert LibvirtManager().define_vm(xml_path) is False

    def test_find_disk_destination_matches_exact_name(self):
        xml = domain_xml()

        assert LibvirtManager.find_disk_destination(xml, "alpha.qcow2") == \
            Path("/var/lib/libvirt/images/alpha.qcow2")
        assert LibvirtManager.find_disk_destination(xml, "data-alpha.qcow2") == \
            Path("/var/lib/libvirt/images/data-alpha.qcow2")
        assert LibvirtManager.find_disk_destination(xml, "beta.qcow2") is None

    def test_find_disk_destination_covers_cdrom_images(self):
        assert LibvirtManager.find_disk_destination(domain_xml(), "install.iso") == \
            Path("/var/lib/libvirt/images/install.iso")


@pytest.fixture
def export_env(tmp_path):
    """Backup directory plus one live disk image for VM 'alpha'"""
    base_dir = tmp_path / "backups"
    base_dir.mkdir()
    images = tmp_path / "images"
    images.mkdir()
    disk = images / "alpha.qcow2"
    disk.write_bytes(b"qcow2-data")

    vm_manager = Mock()
    vm_manager.vm_exists.return_value = True
    vm_manager.list_block_devices.return_value = [str(disk)]
    vm_manager.export_vm_definition.side_effect = \
        lambda name, path: Path(path).write_text(domain_xml(str(images))) or True

    prompter = Mock()
    prompter.confirm.return_value = False

    manager = ExportManager(ToolSettings(container_name="", use_sudo=False), base_dir,
                            Mock(), TempTracker(str(tmp_path)), prompter, vm_manager=vm_manager)
    manager.archiver = Mock()
    manager.archiver.add.side_effect = lambda archive, *args, **kwargs: Path(archive).touch()
    manager.checksums = Mock()
    manager.checksums.write_sha256.side_effect = \
        lambda folder, name: (Path(folder) / f"{name}.sha256").write_text(f"abc  {name}\n")
    manager.relabeler = Mock()
    return manager, base_dir, disk


class TestExportManager:
    """Test cases for the export workflow"""

    def test_export_produces_archive_and_checksum(self, export_env):
        manager, base_dir, disk = export_env

        result = manager.run("alpha", "secret")

        assert result.status == StepStatus.COMPLETED
        assert (base_dir / "alpha.7z").exists()
        assert (base_dir / "alpha.7z.sha256").exists()
        assert not (base_dir / "alpha").exists()

        members = [call.args[1] for call in manager.archiver.add.call_args_list]
        assert members == [["alpha.xml"], [str(disk) + ".sha1"], [str(disk)]]
        manager.checksums.write_sha1.assert_called_once()
        manager.runner.run.assert_called_once_with(['rm', '-f', str(disk) + ".sha1"], check=False)
        manager.relabeler.restore.assert_not_called()

    def test_missing_vm_is_precondition_failure(self, export_env):
        manager, base_dir, _ = export_env
        manager.vm_manager.vm_exists.return_value = False

        with pytest.raises(PreconditionError, match="does not exist"):
            manager.run("alpha", "secret")
        assert list(base_dir.iterdir()) == []

    def test_existing_archive_kept_when_not_confirmed(self, export_env):
        manager, base_dir, _ = export_env
        (base_dir / "alpha.7z").write_bytes(b"old")

        with pytest.raises(PreconditionError):
            manager.run("alpha", "secret")
        assert (base_dir / "alpha.7z").read_bytes() == b"old"
        manager.archiver.add.assert_not_called()

    def test_failed_disk_append_leaves_partial_archive(self, export_env):
        manager, base_dir, disk = export_env
        outcomes = iter([None, CommandError(['7z', 'a'], 2)])

        def add(archive, *args, **kwargs):
            Path(archive).touch()
            outcome = next(outcomes)
            if outcome is not None:
                raise outcome

        manager.archiver.add.side_effect = add

        with pytest.raises(StepError, match="Could not add SHA1 file"):
            manager.run("alpha", "secret")

        assert (base_dir / "alpha.7z").exists()
        assert not (base_dir / "alpha.7z.sha256").exists()
        manager.runner.run.assert_called_once_with(['rm', '-f', str(disk) + ".sha1"], check=False)
        manager.checksums.write_sha256.assert_not_called()

    def test_checksum_failure_aborts_before_append(self, export_env):
        manager, _, _ = export_env
        manager.checksums.write_sha1.side_effect = CommandError(['sh', '-c', 'sha1sum'], 1)

        with pytest.raises(StepError, match="SHA1 file"):
            manager.run("alpha", "secret")
        assert manager.archiver.add.call_count == 1

    def test_verify_with_wrong_passphrase_is_fatal(self, export_env):
        manager, base_dir, _ = export_env
        manager.prompter.confirm.return_value = True
        manager.prompter.password.return_value = "wrong"
        manager.archiver.test.return_value = False

        with pytest.raises(StepError, match="passphrase didn't work"):
            manager.run("alpha", "secret")
        assert (base_dir / "alpha.7z").exists()

    def test_verify_success(self, export_env):
        manager, _, _ = export_env
        manager.prompter.confirm.return_value = True
        manager.prompter.password.return_value = "secret"
        manager.archiver.test.return_value = True

        result = manager.run("alpha", "secret")

        assert "verify_archive" in result.steps

    def test_container_run_restores_labels(self, export_env):
        manager, _, disk = export_env
        manager.container = Mock(used=True)
        manager.container.ensure.return_value = False

        manager.run("alpha", "secret")

        manager.relabeler.restore.assert_called_once_with(disk.parent)

    def test_unreadable_domain_aborts_instead_of_empty_archive(self, export_env):
        manager, base_dir, _ = export_env
        manager.vm_manager.list_block_devices.return_value = None

        with pytest.raises(StepError, match="Couldn't list the disks of alpha") as exc_info:
            manager.run("alpha", "secret")

        assert exc_info.value.step == "archive_disks"
        assert not (base_dir / "alpha.7z.sha256").exists()
        manager.checksums.write_sha256.assert_not_called()

    def test_filesystem_error_becomes_step_failure(self, export_env):
        manager, base_dir, _ = export_env

        with patch('virt_tool.export_manager.shutil.rmtree',
                   side_effect=PermissionError("Permission denied")):
            with pytest.raises(StepError, match="Permission denied") as exc_info:
                manager.run("alpha", "secret")

        assert exc_info.value.step == "filesystem"
        assert exc_info.value.details['after_step'] == "dump_metadata"
        assert not (base_dir / "alpha.7z.sha256").exists()


def write_export(base_dir: Path, images: Path, disk_bytes: bytes = b"qcow2-data",
                 with_iso: bool = False, metadata: str = None):
    """Lay down alpha.7z + sha256 sidecar, return an extractor faking 7z x"""
    archive = base_dir / "alpha.7z"
    archive.write_bytes(b"sealed-archive")
    Checksums(DirectRunner()).write_sha256(base_dir, archive.name)

    def extract(archive_path, destination, passphrase, volumes=()):
        if passphrase != "secret":
            raise CommandError(['7z', 'x'], 2)
        destination = Path(destination)
        (destination / "alpha.xml").write_text(metadata or domain_xml(str(images)))
        (destination / "alpha.qcow2").write_bytes(disk_bytes)
        digest = hashlib.sha1(b"qcow2-data").hexdigest()
        (destination / "alpha.qcow2.sha1").write_text(f"{digest}  alpha.qcow2\n")
        if with_iso:
            (destination / "install.iso").write_bytes(b"iso-data")
            digest = hashlib.sha1(b"iso-data").hexdigest()
            (destination / "install.iso.sha1").write_text(f"{digest}  install.iso\n")

    return extract


@pytest.fixture
def import_env(tmp_path):
    base_dir = tmp_path / "backups"
    base_dir.mkdir()
    images = tmp_path / "images"

    vm_manager = Mock()
    vm_manager.vm_exists.return_value = False
    vm_manager.define_vm.return_value = True
    vm_manager.find_disk_destination.side_effect = LibvirtManager.find_disk_destination

    manager = ImportManager(ToolSettings(container_name="", use_sudo=False), base_dir,
                            DirectRunner(), TempTracker(str(tmp_path)), Mock(),
                            vm_manager=vm_manager)
    manager.archiver = Mock()
    manager.relabeler = Mock()
    return manager, base_dir, images


class TestImportManager:
    """Test cases for the import workflow"""

    def test_available_archives(self, tmp_path):
        for name in ("beta.7z", "alpha.7z", "alpha.7z.sha256", "notes.txt"):
            (tmp_path / name).write_text("x")

        assert ImportManager.available_archives(tmp_path) == ["alpha", "beta"]

    def test_missing_archive_creates_nothing(self, import_env):
        manager, base_dir, _ = import_env

        with pytest.raises(PreconditionError, match="No .7z file found"):
            manager.run("ghost", "secret")
        assert list(base_dir.iterdir()) == []

    def test_import_relocates_disk_and_defines_vm(self, import_env):
        manager, base_dir, images = import_env
        manager.archiver.extract.side_effect = write_export(base_dir, images)

        result = manager.run("alpha", "secret")

        assert result.status == StepStatus.COMPLETED
        assert (images / "alpha.qcow2").read_bytes() == b"qcow2-data"
        assert not (base_dir / "alpha").exists()
        manager.vm_manager.define_vm.assert_called_once_with(base_dir / "alpha" / "alpha.xml")
        assert result.skipped == []

    def test_tampered_archive_is_rejected_before_extraction(self, import_env):
        manager, base_dir, images = import_env
        manager.archiver.extract.side_effect = write_export(base_dir, images)
        (base_dir / "alpha.7z").write_bytes(b"sealed-archivE")

        with pytest.raises(StepError, match="Checksum verification failed"):
            manager.run("alpha", "secret")
        manager.archiver.extract.assert_not_called()
        assert not (base_dir / "alpha").exists()

    def test_wrong_passphrase_stops_import(self, import_env):
        manager, base_dir, images = import_env
        manager.archiver.extract.side_effect = write_export(base_dir, images)

        with pytest.raises(StepError, match="Unarchiving"):
            manager.run("alpha", "wrong")
        manager.vm_manager.define_vm.assert_not_called()

    def test_corrupt_disk_is_not_moved(self, import_env):
        manager, base_dir, images = import_env
        manager.archiver.extract.side_effect = write_export(base_dir, images, b"qcow2-dat4")

        with pytest.raises(StepError, match="Checksum verification failed"):
            manager.run("alpha", "secret")
        assert not (images / "alpha.qcow2").exists()
        manager.vm_manager.define_vm.assert_not_called()

    def test_existing_workdir_aborts(self, import_env):
        manager, base_dir, images = import_env
        manager.archiver.extract.side_effect = write_export(base_dir, images)
        (base_dir / "alpha").mkdir()

        with pytest.raises(StepError, match="already exists"):
            manager.run("alpha", "secret")
        manager.archiver.extract.assert_not_called()

    def test_occupied_destination_is_skipped(self, import_env):
        manager, base_dir, images = import_env
        manager.archiver.extract.side_effect = write_export(base_dir, images)
        images.mkdir()
        (images / "alpha.qcow2").write_bytes(b"original")

        result = manager.run("alpha", "secret")

        assert (images / "alpha.qcow2").read_bytes() == b"original"
        assert result.skipped == [str(images / "alpha.qcow2")]
        manager.vm_manager.define_vm.assert_called_once()

    def test_existing_vm_is_not_redefined(self, import_env):
        manager, base_dir, images = import_env
        manager.archiver.extract.side_effect = write_export(base_dir, images)
        manager.vm_manager.vm_exists.return_value = True

        with pytest.raises(StepError, match="already exists"):
            manager.run("alpha", "secret")
        manager.vm_manager.define_vm.assert_not_called()

    def test_failed_definition_keeps_workdir(self, import_env):
        manager, base_dir, images = import_env
        manager.archiver.extract.side_effect = write_export(base_dir, images)
        manager.vm_manager.define_vm.return_value = False

        with pytest.raises(StepError, match="Failed to define alpha"):
            manager.run("alpha", "secret")
        assert (base_dir / "alpha" / "alpha.xml").exists()

    def test_cdrom_image_is_restored_with_the_disks(self, import_env):
        manager, base_dir, images = import_env
        manager.archiver.extract.side_effect = write_export(base_dir, images, with_iso=True)

        result = manager.run("alpha", "secret")

        assert result.status == StepStatus.COMPLETED
        assert (images / "alpha.qcow2").read_bytes() == b"qcow2-data"
        assert (images / "install.iso").read_bytes() == b"iso-data"
        manager.vm_manager.define_vm.assert_called_once()

    def test_container_run_restores_labels_on_destinations(self, import_env):
        manager, base_dir, images = import_env
        manager.archiver.extract.side_effect = write_export(base_dir, images)
        manager.container = Mock(used=True)
        manager.container.ensure.return_value = False

        manager.run("alpha", "secret")

        manager.relabeler.restore.assert_called_once_with(images)

    def test_unparseable_metadata_is_step_failure(self, import_env):
        manager, base_dir, images = import_env
        manager.archiver.extract.side_effect = write_export(base_dir, images, metadata="<domain><devices>")

        with pytest.raises(StepError, match="Could not parse the VM metadata") as exc_info:
            manager.run("alpha", "secret")

        assert exc_info.value.step == "read_metadata"
        assert not (images / "alpha.qcow2").exists()
        manager.vm_manager.define_vm.assert_not_called()


class TestCLI:
    """Top-level dispatch and exit codes"""

    @pytest.fixture
    def patched_cli(self, tmp_path):
        prompter = Mock()
        vm_manager = Mock()
        vm_manager.list_all_vms.return_value = []
        with patch.object(cli, 'init_logging'), \
             patch.object(cli, 'make_runner', return_value=Mock(elevated=False)), \
             patch.object(cli, 'TempTracker') as mock_tracker, \
             patch.object(cli, 'Preflight') as mock_preflight, \
             patch.object(cli, 'Prompter', return_value=prompter), \
             patch.object(cli, 'LibvirtManager') as mock_libvirt, \
             patch.object(cli.settings, 'backup_dir', str(tmp_path)), \
             patch.object(cli.settings, 'container_name', ""):
            mock_libvirt.return_value.__enter__.return_value = vm_manager
            yield prompter, mock_preflight, mock_tracker, vm_manager

    def test_quit_exits_cleanly(self, patched_cli):
        prompter, _, mock_tracker, _ = patched_cli
        prompter.choose.return_value = "Quit"

        result = CliRunner().invoke(cli.app, [])

        assert result.exit_code == 0
        mock_tracker.return_value.cleanup.assert_called()

    def test_preflight_failure_exits_nonzero(self, patched_cli):
        prompter, mock_preflight, _, _ = patched_cli
        mock_preflight.return_value.run_all.side_effect = PreconditionError("virsh command could not be found.")

        result = CliRunner().invoke(cli.app, [])

        assert result.exit_code == 1
        prompter.choose.assert_not_called()

    def test_import_of_unknown_archive_exits_nonzero(self, patched_cli, tmp_path):
        prompter, _, _, _ = patched_cli
        prompter.choose.side_effect = ["Import", "ghost"]

        result = CliRunner().invoke(cli.app, [])

        assert result.exit_code == 1
        prompter.read_passphrase.assert_not_called()
        assert list(tmp_path.iterdir()) == []

    def test_export_passphrase_mismatch_exits_nonzero(self, patched_cli):
        prompter, _, _, vm_manager = patched_cli
        prompter.choose.side_effect = ["Export", "alpha"]
        vm_manager.list_vm_names.return_value = ["alpha"]
        vm_manager.vm_exists.return_value = True
        prompter.read_new_passphrase.side_effect = PreconditionError("Passphrases do not match!")

        result = CliRunner().invoke(cli.app, [])

        assert result.exit_code == 1

    def test_registry_connection_uses_configured_uri(self, patched_cli):
        prompter, _, _, _ = patched_cli
        prompter.choose.side_effect = ["Import", None]

        with patch.object(cli.settings, 'libvirt_uri', "qemu:///system"):
            result = CliRunner().invoke(cli.app, [])

        assert result.exit_code == 1
        cli.LibvirtManager.assert_called_once_with("qemu:///system")
