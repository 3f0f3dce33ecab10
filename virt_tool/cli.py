"""
Interactive entry point: export or import a libvirt VM
"""
import sys
from pathlib import Path

import typer

from .config import settings
from .container import ContainerProvisioner
from .exceptions import PreconditionError, VirtToolError
from .export_manager import ExportManager
from .import_manager import ImportManager
from .logging_config import setup_logging, get_logger
from .models import Action
from .preflight import Preflight
from .privilege import CommandRunner, CredentialKeepAlive, make_runner
from .resources import TempTracker
from .ui import Prompter, banner, fail, info, vm_table
from .vm_manager import LibvirtManager

app = typer.Typer(help="Export and import libvirt VMs as encrypted 7z archives",
                  add_completion=False)


def init_logging():
    """Initialize logging system"""
    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_dir=settings.log_dir,
        log_file_max_size=settings.log_file_max_size,
        log_file_backup_count=settings.log_file_backup_count,
    )


def resolve_script_dir() -> Path:
    """Directory archives are read from and written to"""
    if settings.backup_dir:
        return Path(settings.backup_dir).expanduser().resolve()
    return Path(sys.argv[0]).resolve().parent


def select_action(prompter: Prompter) -> Action:
    banner('virt-tool', 'Do you want to import or export a VM?')
    choice = prompter.choose("Action", [action.value for action in Action])
    if choice is None:
        raise PreconditionError("Invalid option.")
    return Action(choice)


def run_export(base_dir: Path, runner: CommandRunner, tracker: TempTracker, prompter: Prompter,
               vm_manager: LibvirtManager, container: ContainerProvisioner) -> None:
    banner("Choose VM to export: ")
    vm_name = prompter.choose("VM to export", vm_manager.list_vm_names())
    if not vm_name:
        raise PreconditionError("No VM name entered. Exiting...")
    if not vm_manager.vm_exists(vm_name):
        raise PreconditionError(f"VM '{vm_name}' does not exist.")

    passphrase = prompter.read_new_passphrase()
    manager = ExportManager(settings, base_dir, runner, tracker, prompter,
                            vm_manager=vm_manager, container=container)
    manager.run(vm_name, passphrase)


def run_import(base_dir: Path, runner: CommandRunner, tracker: TempTracker, prompter: Prompter,
               vm_manager: LibvirtManager, container: ContainerProvisioner) -> None:
    vm_table(vm_manager.list_all_vms())

    vm_name = prompter.choose("Choose a VM to import:", ImportManager.available_archives(base_dir))
    if not vm_name:
        raise PreconditionError("No VM name entered. Exiting...")

    manager = ImportManager(settings, base_dir, runner, tracker, prompter,
                            vm_manager=vm_manager, container=container)
    manager.check_archive(vm_name)
    info("Enter the passphrase for the 7zip file.")
    passphrase = prompter.read_passphrase()
    manager.run(vm_name, passphrase)


def offer_container_removal(prompter: Prompter, container: ContainerProvisioner) -> None:
    if container.enabled and prompter.confirm("Do you want to remove the container image?",
                                              default=False):
        container.remove_image()


@app.command()
def main():
    """Interactively export or import a VM"""
    init_logging()
    logger = get_logger("virt_tool.cli")

    runner = make_runner(settings)
    tracker = TempTracker(settings.temp_dir, settings.temp_prefix, settings.token_length)
    tracker.install()
    keepalive = CredentialKeepAlive(runner, settings.keepalive_interval)
    tracker.add_callback(keepalive.stop)
    prompter = Prompter()

    try:
        # Ask for the sudo password now rather than in the middle of the menu
        runner.refresh_credentials()
        keepalive.start()

        base_dir = resolve_script_dir()
        Preflight(settings, runner).run_all(base_dir)

        action = select_action(prompter)
        if action is Action.QUIT:
            info("Exiting...")
            return

        container = ContainerProvisioner(settings, runner, tracker)
        with LibvirtManager(settings.libvirt_uri) as vm_manager:
            if vm_manager.conn is None:
                raise PreconditionError(f"Could not connect to libvirt at {settings.libvirt_uri}")

            if action is Action.EXPORT:
                run_export(base_dir, runner, tracker, prompter, vm_manager, container)
            else:
                run_import(base_dir, runner, tracker, prompter, vm_manager, container)

        offer_container_removal(prompter, container)
        logger.info("Run completed", action=action.value)

    except VirtToolError as e:
        fail(str(e))
        logger.error("Run failed", error=str(e), code=e.code)
        raise typer.Exit(1)
    finally:
        tracker.cleanup()


if __name__ == "__main__":
    app()
