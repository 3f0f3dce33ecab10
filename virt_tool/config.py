"""
Configuration settings for virt-tool
"""
from pathlib import Path
import os
from dataclasses import dataclass

# Load .env file if it exists
def load_env_file():
    env_file = Path(__file__).parent / '.env'
    if env_file.exists():
        with open(env_file, 'r') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    os.environ.setdefault(key.strip(), value.strip())

load_env_file()


@dataclass
class ToolSettings:
    """Main configuration for VM export/import"""

    # Privilege handling
    use_sudo: bool = True
    keepalive_interval: int = 120

    # Container used for 7z on immutable hosts; empty disables it
    container_name: str = "vm-backup"
    container_base_image: str = "registry.fedoraproject.org/fedora-toolbox:latest"
    container_packages: str = "p7zip p7zip-plugins"

    # Archives live here; empty means the directory of the launched script
    backup_dir: str = ""

    # Hypervisor
    libvirt_uri: str = "qemu:///session"
    manager_ui_binary: str = "virt-manager"

    # Temporary resources
    temp_dir: str = "/tmp"
    temp_prefix: str = "virt-tool"
    token_length: int = 20

    # SELinux context restored on VM storage after containerized runs
    selinux_user: str = "system_u"
    selinux_role: str = "object_r"
    selinux_type: str = "virt_image_t"
    selinux_level: str = "s0"

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"
    log_dir: str = "~/.cache/virt-tool/logs"
    log_file_max_size: int = 10485760  # 10MB
    log_file_backup_count: int = 5

    def __post_init__(self):
        """Load configuration from environment variables"""
        for field_name in self.__dataclass_fields__:
            env_name = f"VIRT_TOOL_{field_name.upper()}"
            env_value = os.getenv(env_name)
            if env_value is not None:
                field_type = self.__dataclass_fields__[field_name].type
                if field_type in (int, 'int'):
                    setattr(self, field_name, int(env_value))
                elif field_type in (bool, 'bool'):
                    setattr(self, field_name, env_value.lower() in ('true', '1', 'yes'))
                else:
                    setattr(self, field_name, env_value)

    @property
    def use_container(self) -> bool:
        return bool(self.container_name)

    @property
    def selinux_context_args(self):
        return ['-u', self.selinux_user, '-r', self.selinux_role,
                '-t', self.selinux_type, '-l', self.selinux_level]


# Global settings instance
settings = ToolSettings()
