"""Resource naming conventions.

Every name the tool creates is derived here, and ``parse_vm_name`` is the
only place that maps a VM name back to its role and kind.
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

from .models import VmKind

GATEWAY_SUFFIX = "-gw"
APP_INFIX = "-app-"
DISPOSABLE_PREFIX = "disp-"
NETWORK_SUFFIX = "-inet"
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

_DISPOSABLE_RE = re.compile(r"^disp-(?P<role>.+)-(?P<stamp>\d{8}-\d{6})$")
_APP_RE = re.compile(r"^(?P<role>.+?)-app-(?P<number>\d+)$")


def gateway_vm_name(role: str) -> str:
    return f"{role}{GATEWAY_SUFFIX}"


def app_vm_name(role: str, number: int) -> str:
    return f"{role}{APP_INFIX}{number}"


def role_network_name(role: str) -> str:
    return f"{role}{NETWORK_SUFFIX}"


def timestamp(moment: Optional[datetime] = None) -> str:
    return (moment or datetime.now()).strftime(TIMESTAMP_FORMAT)


def disposable_vm_name(role: str, stamp: str) -> str:
    return f"{DISPOSABLE_PREFIX}{role}-{stamp}"


def gateway_overlay_path(images_dir: Path, role: str) -> Path:
    return Path(images_dir) / f"{role}-gw.qcow2"


def app_overlay_path(images_dir: Path, role: str, number: int) -> Path:
    return Path(images_dir) / f"{role}-app-{number}-overlay.qcow2"


def disposable_dir(role_dir: Path) -> Path:
    return Path(role_dir) / "disposable"


def disposable_overlay_path(role_dir: Path, stamp: str) -> Path:
    return disposable_dir(role_dir) / f"disp-{stamp}.qcow2"


def parse_vm_name(name: str) -> Tuple[VmKind, Optional[str], Optional[int]]:
    """Infer ``(kind, role, app_number)`` from a VM name.

    Names outside the conventions come back as ``(VmKind.OTHER, None, None)``.
    """
    match = _DISPOSABLE_RE.match(name)
    if match:
        return VmKind.DISPOSABLE_APP, match.group("role"), None
    if name.endswith(GATEWAY_SUFFIX) and len(name) > len(GATEWAY_SUFFIX):
        return VmKind.PROXY_GATEWAY, name[: -len(GATEWAY_SUFFIX)], None
    match = _APP_RE.match(name)
    if match:
        return VmKind.APP, match.group("role"), int(match.group("number"))
    if APP_INFIX in name:
        return VmKind.APP, name.split(APP_INFIX, 1)[0], None
    if name.startswith(DISPOSABLE_PREFIX):
        return VmKind.DISPOSABLE_APP, None, None
    return VmKind.OTHER, None, None
