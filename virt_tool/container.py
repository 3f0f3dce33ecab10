"""
Podman container carrying 7z for hosts without direct package installs
"""
import re
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .exceptions import CommandError, StepError
from .logging_config import get_logger, LogOperation
from .privilege import CommandRunner
from .resources import TempTracker


class ContainerProvisioner:
    """Builds the local image lazily and wraps commands to run inside it"""

    def __init__(self, config, runner: CommandRunner, tracker: TempTracker):
        self.config = config
        self.runner = runner
        self.tracker = tracker
        self.used = False
        self.logger = get_logger("virt_tool.container")

    @property
    def enabled(self) -> bool:
        return self.config.use_container

    @property
    def image_ref(self) -> str:
        return f"localhost/{self.config.container_name}"

    def image_exists(self) -> bool:
        result = self.runner.run(['podman', 'images'], check=False, capture=True)
        if result.returncode != 0:
            return False
        pattern = re.compile(rf"(^|\s){re.escape(self.image_ref)}(\s|$)", re.MULTILINE)
        return bool(pattern.search(result.stdout or ""))

    def build_recipe(self) -> str:
        return (f"FROM {self.config.container_base_image}\n"
                f"RUN sudo dnf install -y {self.config.container_packages}\n")

    def ensure(self) -> bool:
        """Make sure the image exists; returns True if it had to be built"""
        if not self.enabled or self.image_exists():
            return False

        context_dir = self.tracker.make_dir("container")
        (context_dir / "Dockerfile").write_text(self.build_recipe())
        try:
            with LogOperation(self.logger, "build_container", image=self.image_ref):
                self.runner.run(['podman', 'build', '-t', self.image_ref, str(context_dir)])
        except CommandError as e:
            raise StepError("build_container",
                            f"Container {self.config.container_name} build failed",
                            details={'returncode': e.returncode}) from e
        finally:
            self.tracker.release(context_dir)
        return True

    def wrap(self, command: Sequence[str], volumes: Iterable[Path],
             workdir: Optional[Path] = None) -> List[str]:
        """Turn a host command into a one-shot podman run with bind mounts"""
        self.used = True
        wrapped = ['podman', 'run', '--rm']
        seen = set()
        for volume in volumes:
            volume = str(volume)
            if volume in seen:
                continue
            seen.add(volume)
            wrapped += ['--volume', f"{volume}:{volume}:Z"]
        if workdir is not None:
            wrapped += ['-w', str(workdir)]
        wrapped.append(self.image_ref)
        wrapped += [str(c) for c in command]
        return wrapped

    def remove_image(self) -> None:
        with LogOperation(self.logger, "remove_container_image", image=self.image_ref):
            self.runner.run(['podman', 'rmi', self.image_ref])
