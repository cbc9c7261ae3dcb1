"""Host checks for the proxy-vm CLI."""

from __future__ import annotations

import shutil
from typing import Any, Dict, List, Optional

from .adapter import LibvirtAdapter
from .errors import INSTALL_HINT, PreconditionFailed

REQUIRED_TOOLS = ("virsh", "virt-install", "qemu-img")


class PlatformManager:
    """Minimal host helpers (Linux-only) used by the CLI."""

    def __init__(self, adapter: Optional[LibvirtAdapter] = None):
        self.adapter = adapter

    def check_prerequisites(self) -> Dict[str, Any]:
        missing: List[str] = [tool for tool in REQUIRED_TOOLS if not shutil.which(tool)]
        warnings: List[str] = []

        elevation = self.adapter.settings.elevation_command if self.adapter else "pkexec"
        if not shutil.which(elevation):
            warnings.append(f"{elevation} missing - operations under system paths will fail")

        if not missing and self.adapter is not None:
            try:
                self.adapter.check_libvirt_access()
            except PreconditionFailed as exc:
                warnings.append(str(exc))

        return {"success": not missing, "missing": missing, "warnings": warnings, "hint": INSTALL_HINT}
