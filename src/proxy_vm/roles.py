"""Per-role metadata stored next to the gateway configuration."""

from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from . import naming
from .errors import NotFound, PreconditionFailed
from .models import GatewayMode, validate_role_name

ROLE_META_FILE = "role-meta.json"
PROXY_CONF_FILE = "proxy.conf"
APPLY_SCRIPT_FILE = "apply-proxy.sh"
ROLE_META_VERSION = 1


class RoleMeta(BaseModel):
    """Canonical role metadata."""

    model_config = ConfigDict(extra="allow")

    version: int = ROLE_META_VERSION
    role_name: str
    gateway_mode: GatewayMode = GatewayMode.PROXY_CHAIN
    gw_template_id: Optional[str] = None
    app_template_id: Optional[str] = None
    disp_template_id: Optional[str] = None
    lan_net: Optional[str] = None
    gw_ram_mb: Optional[int] = Field(None, ge=128)
    app_ram_mb: Optional[int] = Field(None, ge=256)
    gw_vcpus: Optional[int] = Field(None, ge=1)
    app_vm_count: int = Field(0, ge=0)

    @field_validator("role_name")
    @classmethod
    def valid_role_name(cls, value: str) -> str:
        try:
            return validate_role_name(value)
        except PreconditionFailed as exc:
            raise ValueError(str(exc)) from exc

    def next_app_number(self) -> int:
        self.app_vm_count += 1
        return self.app_vm_count

    def gw_vm_name(self) -> str:
        return naming.gateway_vm_name(self.role_name)

    def app_vm_name(self, number: int) -> str:
        return naming.app_vm_name(self.role_name, number)

    def role_net_name(self) -> str:
        return naming.role_network_name(self.role_name)

    @classmethod
    def load(cls, role_dir: Path) -> "RoleMeta":
        path = Path(role_dir) / ROLE_META_FILE
        if not path.exists():
            raise NotFound("Role metadata", str(path))
        return cls.model_validate(json.loads(path.read_text()))

    def save(self, role_dir: Path) -> Path:
        path = Path(role_dir) / ROLE_META_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.model_dump(mode="json"), indent=2))
        return path


def role_exists(role_dir: Path) -> bool:
    role_dir = Path(role_dir)
    return (role_dir / ROLE_META_FILE).exists() or (role_dir / PROXY_CONF_FILE).exists()


def discover_roles(cfg_root: Path) -> List[str]:
    cfg_root = Path(cfg_root)
    if not cfg_root.is_dir():
        return []
    return sorted(entry.name for entry in cfg_root.iterdir() if entry.is_dir() and role_exists(entry))
