"""virt-install command generation for gateway, app and disposable VMs."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Union

PathLike = Union[str, Path]


def _base_command(
    name: str,
    *,
    ram_mb: int,
    vcpus: int,
    disk_path: PathLike,
    libvirt_uri: Optional[str] = None,
) -> List[str]:
    cmd: List[str] = ["virt-install"]
    if libvirt_uri:
        cmd.extend(["--connect", libvirt_uri])
    cmd.extend(
        [
            "--name",
            name,
            "--memory",
            str(ram_mb),
            "--vcpus",
            str(vcpus),
            "--import",
            "--disk",
            f"path={disk_path},format=qcow2",
        ]
    )
    return cmd


def _network(name: str) -> List[str]:
    return ["--network", f"network={name},model=virtio"]


def _filesystem(source: PathLike, target: str) -> List[str]:
    return ["--filesystem", f"source={source},target={target},accessmode=mapped"]


def build_gateway_command(
    name: str,
    *,
    disk_path: PathLike,
    lan_net: str,
    role_net: str,
    role_dir: PathLike,
    os_variant: str,
    ram_mb: int,
    vcpus: int = 1,
    libvirt_uri: Optional[str] = None,
) -> List[str]:
    """Gateway VM: upstream LAN plus role network, role dir mounted as ``proxy``."""
    cmd = _base_command(name, ram_mb=ram_mb, vcpus=vcpus, disk_path=disk_path, libvirt_uri=libvirt_uri)
    cmd.extend(_network(lan_net))
    cmd.extend(_network(role_net))
    cmd.extend(_filesystem(role_dir, "proxy"))
    cmd.extend(["--os-variant", os_variant, "--noautoconsole"])
    return cmd


def build_app_command(
    name: str,
    *,
    disk_path: PathLike,
    role_net: str,
    os_variant: str,
    ram_mb: int,
    vcpus: int = 2,
    shared_dir: Optional[PathLike] = None,
    libvirt_uri: Optional[str] = None,
) -> List[str]:
    cmd = _base_command(name, ram_mb=ram_mb, vcpus=vcpus, disk_path=disk_path, libvirt_uri=libvirt_uri)
    cmd.extend(_network(role_net))
    if shared_dir:
        cmd.extend(_filesystem(shared_dir, "shared"))
    cmd.extend(["--os-variant", os_variant, "--noautoconsole"])
    return cmd


def build_disposable_command(
    name: str,
    *,
    disk_path: PathLike,
    role_net: str,
    os_variant: str,
    ram_mb: int,
    vcpus: int = 2,
    libvirt_uri: Optional[str] = None,
) -> List[str]:
    """Disposable VM: like an app VM, but transient."""
    cmd = build_app_command(
        name,
        disk_path=disk_path,
        role_net=role_net,
        os_variant=os_variant,
        ram_mb=ram_mb,
        vcpus=vcpus,
        libvirt_uri=libvirt_uri,
    )
    cmd.append("--transient")
    return cmd
