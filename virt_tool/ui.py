"""
Console output and interactive prompts
"""
from typing import List, Optional, Sequence

import questionary
from rich import box
from rich.align import Align
from rich.console import Console
from rich.padding import Padding
from rich.panel import Panel
from rich.table import Table

from .exceptions import PreconditionError
from .models import VMInfo, VMState


console = Console()

ACCENT = "#ff87d7"


def banner(*lines: str) -> None:
    """Double-bordered centered panel announcing the next step"""
    panel = Panel(
        Align.center("\n".join(lines)),
        box=box.DOUBLE,
        border_style=ACCENT,
        style=ACCENT,
        width=50,
        padding=(2, 4),
    )
    console.print(Padding(panel, (1, 2)))


def success(message: str = "") -> None:
    console.print(f"[[green]✓[/green]] SUCCESS - {message}", highlight=False)


def fail(message: str = "") -> None:
    console.print(f"[[red]✗[/red]] FAIL - {message}", highlight=False)


def info(message: str) -> None:
    console.print(message, highlight=False)


def vm_table(vms: Sequence[VMInfo]) -> None:
    if not vms:
        console.print("[yellow]No VMs found[/yellow]")
        return

    table = Table(title="Existing VMs")
    table.add_column("Name", style="cyan")
    table.add_column("State", style="green")
    table.add_column("Disks", justify="right")

    for vm in vms:
        state_color = {
            VMState.RUNNING: "green",
            VMState.PAUSED: "yellow",
            VMState.SHUTDOWN: "red",
            VMState.UNKNOWN: "dim"
        }.get(vm.state, "white")
        table.add_row(vm.name, f"[{state_color}]{vm.state.value}[/{state_color}]",
                      str(len(vm.disk_paths)))

    console.print(table)


class Prompter:
    """questionary-backed selection, masked input and confirmation"""

    def choose(self, message: str, choices: List[str]) -> Optional[str]:
        if not choices:
            return None
        return questionary.select(message, choices=choices).ask()

    def password(self, message: str = "Passphrase") -> str:
        answer = questionary.password(message).ask()
        if answer is None:
            raise PreconditionError("Passphrase entry cancelled")
        return answer

    def confirm(self, message: str, default: bool = True) -> bool:
        return bool(questionary.confirm(message, default=default).ask())

    def read_passphrase(self, message: str = "Passphrase") -> str:
        """Ask until a non-empty passphrase is given"""
        while True:
            passphrase = self.password(message)
            if passphrase:
                return passphrase
            info("Passphrase cannot be empty. Please try again.")

    def read_new_passphrase(self) -> str:
        """Ask twice; a mismatch ends the run"""
        info("Enter an encryption passphrase for the 7zip file:")
        passphrase = self.read_passphrase()
        info("Repeat passphrase:")
        if self.password() != passphrase:
            raise PreconditionError("Passphrases do not match!")
        return passphrase
