"""Exception hierarchy shared by the adapter, provisioner and CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from .process_utils import ProcessResult


INSTALL_HINT = "sudo apt install libvirt-clients virtinst qemu-utils"


class ProxyVmError(Exception):
    """Base class for every error raised by proxy_vm."""


class PreconditionFailed(ProxyVmError):
    """Configuration, input or host state does not allow the operation."""


class AlreadyExists(ProxyVmError):
    """A resource with the requested identity is already present."""

    def __init__(self, kind: str, name: str):
        super().__init__(f"{kind} '{name}' already exists")
        self.kind = kind
        self.name = name


class NotFound(ProxyVmError):
    """A named record (role, template) does not exist."""

    def __init__(self, kind: str, name: str):
        super().__init__(f"{kind} '{name}' not found")
        self.kind = kind
        self.name = name


class ToolNotFound(ProxyVmError):
    """An external executable could not be spawned."""

    def __init__(self, tools: Sequence[str], hint: str = INSTALL_HINT):
        self.tools = list(tools)
        self.hint = hint
        super().__init__(
            f"Required tool(s) not found: {', '.join(self.tools)}. Install with: {hint}"
        )


class ToolInvocationFailed(ProxyVmError):
    """An external command ran but reported failure."""

    def __init__(self, result: "ProcessResult", message: Optional[str] = None):
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
        super().__init__(
            f"{message or 'Command failed'}: {detail} (command: {' '.join(result.command)})"
        )

    @property
    def command(self):
        return self.result.command

    @property
    def stderr(self) -> str:
        return self.result.stderr


class ConnectionTestFailed(ProxyVmError):
    def __init__(self, host: str, port: int, reason: str):
        super().__init__(f"Connection to {host}:{port} failed: {reason}")
        self.host = host
        self.port = port
        self.reason = reason
