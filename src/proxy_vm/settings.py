"""Pydantic settings for proxy-vm."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import PreconditionFailed

MIN_GATEWAY_RAM_MB = 128
MIN_APP_RAM_MB = 256


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PROXY_VM_",
        env_file=".env",
        extra="ignore",
    )

    config_dir: Path = Field(
        default=Path.home() / ".config" / "proxy-vm-wizard",
        description="Directory holding the template registry.",
    )
    cfg_root: Path = Field(
        default=Path.home() / "VMS" / "VM-Proxy-configs",
        description="Root of the per-role configuration directories.",
    )
    images_dir: Path = Field(
        default=Path("/var/lib/libvirt/images"),
        description="Directory where template images and gateway/app overlays live.",
    )
    lan_net: str = Field("lan-net", description="Shared upstream libvirt network.")
    gateway_ram_mb: int = Field(1024, description="Minimum RAM for gateway VMs.")
    app_ram_mb: int = Field(2048, description="RAM for app VMs.")
    disp_ram_mb: int = Field(2048, description="RAM for disposable VMs.")
    gateway_vcpus: int = Field(1, ge=1, description="vCPUs for gateway VMs.")
    app_vcpus: int = Field(2, ge=1, description="vCPUs for app and disposable VMs.")
    debian_os_variant: str = Field("debian12", description="virt-install OS variant for Debian images.")
    fedora_os_variant: str = Field("fedora40", description="virt-install OS variant for Fedora images.")
    libvirt_uri: Optional[str] = Field(None, description="libvirt connection URI; tool default when unset.")
    elevation_command: str = Field("pkexec", description="Command used to run privileged operations.")
    protected_prefixes: List[Path] = Field(
        default_factory=lambda: [Path("/var/lib"), Path("/usr"), Path("/etc")],
        description="Paths under these prefixes are modified through the elevation command.",
    )
    connect_timeout: float = Field(5.0, gt=0, description="TCP probe timeout in seconds.")
    restart_settle_seconds: float = Field(
        0.5, ge=0, description="Pause between stopping and starting a gateway on reconfiguration."
    )
    app_overlay_scan_limit: int = Field(20, ge=1, description="App overlay ordinals swept on role deletion.")
    log_level: str = Field("INFO", description="Root log level.")
    log_format: str = Field("console", description="'console' or 'json'.")

    @property
    def templates_path(self) -> Path:
        return self.config_dir / "templates.json"

    def role_dir(self, role: str) -> Path:
        return self.cfg_root / role

    def validate_invariants(self) -> None:
        """Reject settings that cannot produce a working role."""
        if not self.lan_net.strip():
            raise PreconditionFailed("LAN network name cannot be empty")
        if self.gateway_ram_mb < MIN_GATEWAY_RAM_MB:
            raise PreconditionFailed(f"Gateway RAM must be at least {MIN_GATEWAY_RAM_MB} MB")
        if self.app_ram_mb < MIN_APP_RAM_MB:
            raise PreconditionFailed(f"App RAM must be at least {MIN_APP_RAM_MB} MB")
