"""Resource lifecycle adapter over virsh, virt-install and qemu-img.

Every libvirt and disk mutation goes through here. Commands that touch
system-owned paths run through the elevated :class:`Invoker`; everything
else runs directly. Failures surface as :class:`ToolInvocationFailed`
carrying the attempted command and its stderr.
"""

from __future__ import annotations

import os
import socket
import tempfile
import xml.etree.ElementTree as ET
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import structlog

from . import naming
from .errors import AlreadyExists, ConnectionTestFailed, PreconditionFailed, ToolInvocationFailed
from .models import NetworkInfo, NetworkState, VmInfo, VmState
from .process_utils import Invoker, ProcessResult, Runner, needs_privilege, run_command
from .settings import Settings
from .virt_install import build_app_command, build_disposable_command, build_gateway_command

logger = structlog.get_logger(__name__)

PathLike = Union[str, Path]

NETWORK_XML = """<network>
  <name>{name}</name>
  <bridge stp='on' delay='0'/>
</network>"""

VM_NOT_RUNNING = ("not running",)
VM_MISSING = ("failed to get domain", "domain not found", "no domain with matching name")
NETWORK_MISSING = ("failed to get network", "network not found", "no network with matching name")
FILE_MISSING = ("no such file",)


def parse_key_values(text: str) -> Dict[str, str]:
    """Parse ``Key: value`` lines into a dict keyed by lowercased key."""
    fields: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        fields[key.strip().lower()] = value.strip()
    return fields


def parse_backing_file(text: str) -> Optional[str]:
    for line in text.splitlines():
        if line.startswith("backing file:"):
            tokens = line[len("backing file:"):].split()
            return tokens[0] if tokens else None
    return None


def parse_domain_disk(xml_text: str) -> Optional[str]:
    """Return the first file-backed disk source of a domain definition."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return None
    for disk in root.iter("disk"):
        if disk.get("device", "disk") != "disk":
            continue
        source = disk.find("source")
        if source is not None and source.get("file"):
            return source.get("file")
    return None


def _mentions(result: ProcessResult, markers: Iterable[str]) -> bool:
    text = result.stderr.lower()
    return any(marker in text for marker in markers)


class LibvirtAdapter:
    """Thin, stateless wrapper around the libvirt/QEMU command-line tools."""

    def __init__(self, settings: Optional[Settings] = None, runner: Runner = run_command):
        self.settings = settings or Settings()
        self._direct = Invoker(runner)
        self._elevated = Invoker(runner, prefix=(self.settings.elevation_command,))
        self.log = logger.bind(component="libvirt_adapter")

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------
    def invoker_for(self, path: PathLike) -> Invoker:
        if needs_privilege(path, self.settings.protected_prefixes):
            return self._elevated
        return self._direct

    def _virsh(self, *args: str) -> ProcessResult:
        cmd: List[str] = ["virsh"]
        if self.settings.libvirt_uri:
            cmd.extend(["-c", self.settings.libvirt_uri])
        cmd.extend(args)
        return self._direct.run(cmd)

    @staticmethod
    def _check(result: ProcessResult, message: str) -> ProcessResult:
        if not result.ok:
            raise ToolInvocationFailed(result, message)
        return result

    def check_libvirt_access(self) -> None:
        result = self._virsh("list", "--all")
        if not result.ok:
            raise PreconditionFailed(
                "Cannot access libvirt. Make sure libvirtd is running and your user "
                f"is in the 'libvirt' group: {result.stderr.strip()}"
            )

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------
    def network_exists(self, name: str) -> bool:
        return self._virsh("net-info", name).ok

    def get_network_info(self, name: str) -> Optional[NetworkInfo]:
        """Describe ``name``; None when virsh cannot report on it."""
        result = self._virsh("net-info", name)
        if not result.ok:
            return None
        fields = parse_key_values(result.stdout)
        info = NetworkInfo(name=name)
        if "active" in fields:
            info.state = NetworkState.ACTIVE if fields["active"].lower() == "yes" else NetworkState.INACTIVE
        info.autostart = fields.get("autostart", "").lower() == "yes"
        info.bridge = fields.get("bridge") or None
        return info

    def list_networks(self) -> List[str]:
        result = self._check(self._virsh("net-list", "--all", "--name"), "Failed to list networks")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def ensure_lan_net_exists(self, name: str) -> None:
        if not self.network_exists(name):
            raise PreconditionFailed(
                f"LAN network '{name}' does not exist. Create it first or update the settings."
            )

    def ensure_role_network(self, role: str) -> bool:
        """Define, autostart and start ``{role}-inet``.

        Returns False when the network already existed; in that case nothing
        was touched and the caller must not tear it down.
        """
        name = naming.role_network_name(role)
        if self.network_exists(name):
            self.log.info("Role network already exists", network=name)
            return False

        fd, xml_path = tempfile.mkstemp(prefix=f"net-{name}-", suffix=".xml")
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(NETWORK_XML.format(name=name))

            self._check(self._virsh("net-define", xml_path), f"Failed to define network '{name}'")

            result = self._virsh("net-autostart", name)
            if not result.ok:
                self._virsh("net-undefine", name)
                raise ToolInvocationFailed(result, f"Failed to set autostart on network '{name}'")

            result = self._virsh("net-start", name)
            if not result.ok:
                self._virsh("net-destroy", name)
                self._virsh("net-undefine", name)
                raise ToolInvocationFailed(result, f"Failed to start network '{name}'")
        finally:
            Path(xml_path).unlink(missing_ok=True)

        self.log.info("Created role network", network=name)
        return True

    def destroy_network(self, name: str) -> None:
        # net-destroy fails on inactive networks; the undefine result decides
        self._virsh("net-destroy", name)
        result = self._virsh("net-undefine", name)
        if not result.ok and not _mentions(result, NETWORK_MISSING):
            raise ToolInvocationFailed(result, f"Failed to undefine network '{name}'")

    # ------------------------------------------------------------------
    # Disks
    # ------------------------------------------------------------------
    def gateway_overlay_path(self, role: str) -> Path:
        return naming.gateway_overlay_path(self.settings.images_dir, role)

    def app_overlay_path(self, role: str, number: int) -> Path:
        return naming.app_overlay_path(self.settings.images_dir, role, number)

    def disposable_overlay_path(self, role: str, stamp: str) -> Path:
        return naming.disposable_overlay_path(self.settings.role_dir(role), stamp)

    def is_in_images_dir(self, path: PathLike) -> bool:
        images_dir = Path(self.settings.images_dir)
        return images_dir in Path(path).parents

    def ensure_images_dir(self) -> None:
        images_dir = Path(self.settings.images_dir)
        if images_dir.exists():
            return
        self._check(
            self.invoker_for(images_dir).run(["mkdir", "-p", images_dir]),
            f"Failed to create images directory {images_dir}",
        )

    def copy_template_to_images_dir(self, source: PathLike) -> Path:
        """Copy a template image into the images directory and return its new path."""
        source = Path(source)
        dest = Path(self.settings.images_dir) / source.name
        if dest.exists():
            self.log.info("Template already present in images dir", path=str(dest))
            return dest
        if not source.is_file():
            raise PreconditionFailed(f"Template file not found: {source}")

        self.ensure_images_dir()
        invoker = self.invoker_for(dest)
        self._check(invoker.run(["cp", source, dest]), f"Failed to copy template to {dest}")
        if not invoker.run(["chown", "libvirt-qemu:kvm", dest]).ok:
            invoker.run(["chown", "root:root", dest])
        invoker.run(["chmod", "644", dest])
        self.log.info("Copied template into images dir", source=str(source), dest=str(dest))
        return dest

    def create_overlay_disk(self, template: PathLike, overlay: PathLike) -> Path:
        template = Path(template)
        overlay = Path(overlay)
        if not template.exists():
            raise PreconditionFailed(f"Template image not found: {template}")
        if overlay.exists():
            raise AlreadyExists("Overlay disk", str(overlay))

        invoker = self.invoker_for(overlay)
        if not overlay.parent.exists():
            self._check(
                invoker.run(["mkdir", "-p", overlay.parent]),
                f"Failed to create directory {overlay.parent}",
            )
        self._check(
            invoker.run(["qemu-img", "create", "-f", "qcow2", "-F", "qcow2", "-b", template, overlay]),
            f"Failed to create overlay disk {overlay}",
        )
        if not invoker.run(["chmod", "644", overlay]).ok:
            self.log.warning("Could not set overlay permissions", path=str(overlay))
        self.log.info("Created overlay disk", path=str(overlay), backing=str(template))
        return overlay

    def delete_overlay_disk(self, path: PathLike) -> bool:
        """Remove an overlay; returns False when there was nothing to remove."""
        path = Path(path)
        if not path.exists():
            return False
        result = self.invoker_for(path).run(["rm", "-f", path])
        if not result.ok and not _mentions(result, FILE_MISSING):
            raise ToolInvocationFailed(result, f"Failed to delete {path}")
        return True

    def get_backing_file(self, image: PathLike) -> Optional[str]:
        result = self._direct.run(["qemu-img", "info", "--force-share", image])
        if not result.ok:
            return None
        return parse_backing_file(result.stdout)

    # ------------------------------------------------------------------
    # VMs
    # ------------------------------------------------------------------
    def vm_exists(self, name: str) -> bool:
        return self._virsh("dominfo", name).ok

    def get_vm_info(self, name: str) -> Optional[VmInfo]:
        result = self._virsh("dominfo", name)
        if not result.ok:
            return None
        fields = parse_key_values(result.stdout)
        kind, role, number = naming.parse_vm_name(name)
        state = VmState.from_virsh(fields["state"]) if "state" in fields else VmState.UNKNOWN
        return VmInfo(name=name, state=state, kind=kind, role=role, app_number=number)

    def list_vms(self) -> List[str]:
        result = self._check(self._virsh("list", "--all", "--name"), "Failed to list VMs")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def list_role_vms(self, role: str) -> List[VmInfo]:
        infos: List[VmInfo] = []
        for name in self.list_vms():
            _, vm_role, _ = naming.parse_vm_name(name)
            if vm_role != role:
                continue
            info = self.get_vm_info(name)
            # transient domains can vanish between list and dominfo
            if info is not None:
                infos.append(info)
        return infos

    def _create_vm(self, name: str, cmd: List[str], what: str) -> None:
        if self.vm_exists(name):
            raise AlreadyExists("VM", name)
        self._check(self._direct.run(cmd), f"Failed to create {what} '{name}'")
        self.log.info("Created VM", vm=name, kind=what)

    def create_gateway_vm(
        self,
        name: str,
        *,
        overlay: PathLike,
        lan_net: str,
        role_net: str,
        role_dir: PathLike,
        os_variant: str,
        ram_mb: int,
        vcpus: Optional[int] = None,
    ) -> None:
        cmd = build_gateway_command(
            name,
            disk_path=overlay,
            lan_net=lan_net,
            role_net=role_net,
            role_dir=role_dir,
            os_variant=os_variant,
            ram_mb=ram_mb,
            vcpus=vcpus or self.settings.gateway_vcpus,
            libvirt_uri=self.settings.libvirt_uri,
        )
        self._create_vm(name, cmd, "gateway VM")

    def create_app_vm(
        self,
        name: str,
        *,
        overlay: PathLike,
        role_net: str,
        os_variant: str,
        ram_mb: int,
        vcpus: Optional[int] = None,
        shared_dir: Optional[PathLike] = None,
    ) -> None:
        cmd = build_app_command(
            name,
            disk_path=overlay,
            role_net=role_net,
            os_variant=os_variant,
            ram_mb=ram_mb,
            vcpus=vcpus or self.settings.app_vcpus,
            shared_dir=shared_dir,
            libvirt_uri=self.settings.libvirt_uri,
        )
        self._create_vm(name, cmd, "app VM")

    def create_disposable_vm(
        self,
        name: str,
        *,
        overlay: PathLike,
        role_net: str,
        os_variant: str,
        ram_mb: int,
        vcpus: Optional[int] = None,
    ) -> None:
        cmd = build_disposable_command(
            name,
            disk_path=overlay,
            role_net=role_net,
            os_variant=os_variant,
            ram_mb=ram_mb,
            vcpus=vcpus or self.settings.app_vcpus,
            libvirt_uri=self.settings.libvirt_uri,
        )
        self._create_vm(name, cmd, "disposable VM")

    def start_vm(self, name: str) -> None:
        self._check(self._virsh("start", name), f"Failed to start VM '{name}'")

    def stop_vm(self, name: str) -> None:
        """Request a graceful shutdown; a stopped or missing VM is fine."""
        result = self._virsh("shutdown", name)
        if not result.ok and not _mentions(result, VM_NOT_RUNNING + VM_MISSING):
            raise ToolInvocationFailed(result, f"Failed to stop VM '{name}'")

    def destroy_vm(self, name: str) -> None:
        result = self._virsh("destroy", name)
        if not result.ok and not _mentions(result, VM_NOT_RUNNING + VM_MISSING):
            raise ToolInvocationFailed(result, f"Failed to destroy VM '{name}'")

    def undefine_vm(self, name: str) -> None:
        self.destroy_vm(name)
        result = self._virsh("undefine", name)
        if not result.ok and not _mentions(result, VM_MISSING):
            raise ToolInvocationFailed(result, f"Failed to undefine VM '{name}'")

    def cleanup_vm(self, name: str, disk: Optional[PathLike] = None) -> None:
        """Destroy and undefine ``name``, then remove its overlay if given."""
        self.undefine_vm(name)
        if disk is not None:
            self.delete_overlay_disk(disk)

    # ------------------------------------------------------------------
    # Disk to VM lookups
    # ------------------------------------------------------------------
    def get_vm_disk_path(self, name: str) -> Optional[str]:
        result = self._virsh("dumpxml", name)
        if not result.ok:
            return None
        return parse_domain_disk(result.stdout)

    def get_disk_to_vm_map(self) -> Dict[str, List[str]]:
        mapping: Dict[str, List[str]] = defaultdict(list)
        for name in self.list_vms():
            disk = self.get_vm_disk_path(name)
            if disk:
                mapping[disk].append(name)
        return dict(mapping)

    def get_vms_using_image(self, image: PathLike) -> List[str]:
        """VMs whose disk is ``image`` or an overlay backed directly by it."""
        target = str(image)
        users = set()
        for disk, vms in self.get_disk_to_vm_map().items():
            if disk == target or self.get_backing_file(disk) == target:
                users.update(vms)
        return sorted(users)

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------
    def test_tcp_connection(self, host: str, port: int, timeout: Optional[float] = None) -> None:
        timeout = timeout or self.settings.connect_timeout
        try:
            addresses = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        except socket.gaierror as exc:
            raise ConnectionTestFailed(host, port, f"DNS resolution failed: {exc}") from exc

        reason = "no addresses resolved"
        for family, socktype, proto, _, address in addresses:
            try:
                with socket.socket(family, socktype, proto) as sock:
                    sock.settimeout(timeout)
                    sock.connect(address)
                    return
            except OSError as exc:
                reason = str(exc) or exc.__class__.__name__
        raise ConnectionTestFailed(host, port, reason)
