"""
Libvirt registry access: listing, dumping and defining domains
"""
import libvirt
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import List, Optional

from .models import VMInfo
from .logging_config import get_logger, LogOperation


class LibvirtManager:
    """Manager for libvirt operations needed by export and import"""

    def __init__(self, uri: str = "qemu:///session"):
        self.uri = uri
        self.conn: Optional[libvirt.virConnect] = None
        self.logger = get_logger("virt_tool.vm_manager")

    def connect(self) -> bool:
        """Connect to libvirt daemon"""
        try:
            if self.conn is None or not self.conn.isAlive():
                self.conn = libvirt.open(self.uri)
                self.logger.info("Connected to libvirt", uri=self.uri)
            return True
        except libvirt.libvirtError as e:
            self.logger.error("Failed to connect to libvirt", uri=self.uri, error=str(e))
            self.conn = None
            return False

    def disconnect(self) -> None:
        """Disconnect from libvirt daemon"""
        if self.conn and self.conn.isAlive():
            self.conn.close()
            self.logger.info("Disconnected from libvirt")
        self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

    def list_all_vms(self) -> List[VMInfo]:
        """List all VMs (running and stopped)"""
        if not self.connect():
            return []

        try:
            vms = []
            for domain in self.conn.listAllDomains():
                vm_info = VMInfo.from_libvirt_domain(domain)
                vm_info.disk_paths = self.block_device_sources(domain.XMLDesc())
                vms.append(vm_info)

            self.logger.info(f"Found {len(vms)} VMs", vm_count=len(vms))
            return vms

        except libvirt.libvirtError as e:
            self.logger.error("Failed to list VMs", error=str(e))
            return []

    def list_vm_names(self) -> List[str]:
        return [vm.name for vm in self.list_all_vms()]

    def vm_exists(self, name: str) -> bool:
        if not self.connect():
            return False
        try:
            self.conn.lookupByName(name)
            return True
        except libvirt.libvirtError:
            return False

    def export_vm_definition(self, vm_name: str, output_path: Path) -> bool:
        """Export VM XML definition to file"""
        if not self.connect():
            return False

        try:
            domain = self.conn.lookupByName(vm_name)
            xml_desc = domain.XMLDesc()

            with open(output_path, 'w', encoding='utf-8') as f:
                f.write(xml_desc)

            self.logger.info("VM definition exported", vm_name=vm_name, output_path=str(output_path))
            return True

        except (libvirt.libvirtError, IOError) as e:
            self.logger.error("Failed to export VM definition",
                              vm_name=vm_name, output_path=str(output_path), error=str(e))
            return False

    def list_block_devices(self, vm_name: str) -> Optional[List[str]]:
        """Backing paths of the VM's block devices, skipping empty drives

        Returns None when the domain could not be read, so callers can tell
        a lookup failure apart from a VM without disks.
        """
        if not self.connect():
            return None

        try:
            domain = self.conn.lookupByName(vm_name)
            return self.block_device_sources(domain.XMLDesc())
        except libvirt.libvirtError as e:
            self.logger.error("Failed to list block devices", vm_name=vm_name, error=str(e))
            return None

    def define_vm(self, xml_path: Path) -> bool:
        """Register a domain from a saved XML definition"""
        if not self.connect():
            return False

        try:
            xml_desc = Path(xml_path).read_text(encoding='utf-8')
            with LogOperation(self.logger, "define_vm", xml_path=str(xml_path)):
                self.conn.defineXML(xml_desc)
            return True
        except (libvirt.libvirtError, IOError) as e:
            self.logger.error("Failed to define VM", xml_path=str(xml_path), error=str(e))
            return False

    @staticmethod
    def block_device_sources(xml_desc: str) -> List[str]:
        """Source of every <disk>, the way `virsh domblklist` reports them"""
        root = ET.fromstring(xml_desc)
        sources = []
        for disk in root.findall("./devices/disk"):
            source = disk.find("source")
            if source is None:
                continue
            path = source.get("file") or source.get("dev") or source.get("dir")
            if path:
                sources.append(path)
        return sources

    @classmethod
    def find_disk_destination(cls, xml_desc: str, filename: str) -> Optional[Path]:
        """Original location of an archived image, matched on its exact basename

        Searches the same sources export archives, so CD-ROM images come
        back to where the domain expects them too.
        """
        for path in cls.block_device_sources(xml_desc):
            if Path(path).name == filename:
                return Path(path)
        return None
