"""Proxy gateway VM role manager for libvirt hosts."""

from .adapter import LibvirtAdapter
from .errors import (
    AlreadyExists,
    ConnectionTestFailed,
    NotFound,
    PreconditionFailed,
    ProxyVmError,
    ToolInvocationFailed,
    ToolNotFound,
)
from .models import GatewayMode, ProxyConfig, ProxyHop, VmInfo, VmKind, VmState
from .provisioner import ProvisioningLedger, RoleProvisioner, RoleRequest
from .settings import Settings
from .templates import Template, TemplateRegistry

__version__ = "0.2.1"

__all__ = [
    "AlreadyExists",
    "ConnectionTestFailed",
    "GatewayMode",
    "LibvirtAdapter",
    "NotFound",
    "PreconditionFailed",
    "ProvisioningLedger",
    "ProxyConfig",
    "ProxyHop",
    "ProxyVmError",
    "RoleProvisioner",
    "RoleRequest",
    "Settings",
    "Template",
    "TemplateRegistry",
    "ToolInvocationFailed",
    "ToolNotFound",
    "VmInfo",
    "VmKind",
    "VmState",
]
