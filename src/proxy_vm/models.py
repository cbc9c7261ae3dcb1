"""Pydantic models and enums shared across proxy_vm."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
from urllib.parse import unquote, urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import PreconditionFailed

ROLE_NAME_PATTERN = re.compile(r"[a-z0-9_-]+")
MAX_ROLE_NAME_LENGTH = 32
MAX_PROXY_HOPS = 8


def normalize_role_name(name: str) -> str:
    return name.strip().lower()


def validate_role_name(name: str) -> str:
    """Normalize ``name`` and return it, or raise PreconditionFailed."""
    normalized = normalize_role_name(name)
    if not normalized:
        raise PreconditionFailed("Role name cannot be empty")
    if len(normalized) > MAX_ROLE_NAME_LENGTH:
        raise PreconditionFailed(f"Role name must be at most {MAX_ROLE_NAME_LENGTH} characters")
    if not ROLE_NAME_PATTERN.fullmatch(normalized):
        raise PreconditionFailed(
            "Role name can only contain lowercase letters, numbers, hyphens, and underscores"
        )
    return normalized


class VmState(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    SHUT_OFF = "shut_off"
    UNKNOWN = "unknown"

    @classmethod
    def from_virsh(cls, value: str) -> "VmState":
        text = value.strip().lower()
        if text == "running":
            return cls.RUNNING
        if text == "paused":
            return cls.PAUSED
        if text in ("shut off", "shutoff"):
            return cls.SHUT_OFF
        return cls.UNKNOWN


class NetworkState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    UNKNOWN = "unknown"


class VmKind(str, Enum):
    PROXY_GATEWAY = "proxy_gateway"
    APP = "app"
    DISPOSABLE_APP = "disposable_app"
    OTHER = "other"


class GatewayMode(str, Enum):
    PROXY_CHAIN = "PROXY_CHAIN"
    WIREGUARD = "WIREGUARD"
    OPENVPN = "OPENVPN"


class ProxyType(str, Enum):
    SOCKS5 = "SOCKS5"
    HTTP = "HTTP"


class ChainStrategy(str, Enum):
    STRICT = "strict_chain"
    DYNAMIC = "dynamic_chain"
    RANDOM = "random_chain"


@dataclass
class VmInfo:
    name: str
    state: VmState = VmState.UNKNOWN
    kind: VmKind = VmKind.OTHER
    role: Optional[str] = None
    app_number: Optional[int] = None


@dataclass
class NetworkInfo:
    name: str
    state: NetworkState = NetworkState.UNKNOWN
    autostart: bool = False
    bridge: Optional[str] = None


class ProxyHop(BaseModel):
    """One hop of a proxy chain."""

    model_config = ConfigDict(extra="ignore")

    index: int = Field(1, ge=1)
    proxy_type: ProxyType = ProxyType.SOCKS5
    host: str = ""
    port: int = 1080
    username: Optional[str] = None
    password: Optional[str] = None
    label: Optional[str] = None

    @field_validator("username", "password", "label")
    @classmethod
    def blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not str(value).strip():
            return None
        return value

    @classmethod
    def from_url(cls, url: str, index: int = 1, label: Optional[str] = None) -> "ProxyHop":
        """Build a hop from ``scheme://[user:pass@]host:port``."""
        parts = urlsplit(url if "://" in url else f"socks5://{url}")
        scheme = parts.scheme.lower()
        if scheme in ("socks5", "socks", "socks5h"):
            proxy_type = ProxyType.SOCKS5
        elif scheme in ("http", "https"):
            proxy_type = ProxyType.HTTP
        else:
            raise PreconditionFailed(f"Unsupported proxy scheme '{parts.scheme}'")
        try:
            port = parts.port
        except ValueError as exc:
            raise PreconditionFailed(f"Invalid proxy port in '{url}'") from exc
        if not parts.hostname:
            raise PreconditionFailed(f"Proxy URL '{url}' has no host")
        return cls(
            index=index,
            proxy_type=proxy_type,
            host=parts.hostname,
            port=(1080 if proxy_type is ProxyType.SOCKS5 else 8080) if port is None else port,
            username=unquote(parts.username) if parts.username else None,
            password=unquote(parts.password) if parts.password else None,
            label=label or (parts.fragment or None),
        )


class WireGuardConfig(BaseModel):
    config_path: str = ""
    interface_name: str = "wg0"
    route_all_traffic: bool = True


class OpenVpnConfig(BaseModel):
    config_path: str = ""
    auth_file: Optional[str] = None
    route_all_traffic: bool = True


class ProxyConfig(BaseModel):
    """Gateway configuration written to ``proxy.conf``."""

    role: str
    gateway_mode: GatewayMode = GatewayMode.PROXY_CHAIN
    chain_strategy: ChainStrategy = ChainStrategy.STRICT
    hops: List[ProxyHop] = Field(default_factory=list)
    wireguard: Optional[WireGuardConfig] = None
    openvpn: Optional[OpenVpnConfig] = None

    def validate_config(self) -> None:
        if not self.role.strip():
            raise PreconditionFailed("Role name cannot be empty")

        if self.gateway_mode is GatewayMode.PROXY_CHAIN:
            if not self.hops:
                raise PreconditionFailed("At least one proxy hop is required")
            if len(self.hops) > MAX_PROXY_HOPS:
                raise PreconditionFailed(f"Maximum {MAX_PROXY_HOPS} proxy hops allowed")
            for position, hop in enumerate(self.hops, start=1):
                if not hop.host.strip():
                    raise PreconditionFailed(f"Proxy hop {position}: host cannot be empty")
                if not 0 < hop.port <= 65535:
                    raise PreconditionFailed(f"Proxy hop {position}: port must be between 1 and 65535")
        elif self.gateway_mode is GatewayMode.WIREGUARD:
            if self.wireguard is None or not self.wireguard.config_path.strip():
                raise PreconditionFailed("WireGuard mode requires a config file")
        elif self.gateway_mode is GatewayMode.OPENVPN:
            if self.openvpn is None or not self.openvpn.config_path.strip():
                raise PreconditionFailed("OpenVPN mode requires a config file")

    def renumbered(self) -> "ProxyConfig":
        """Copy with hop indices reset to 1..n in list order."""
        hops = [hop.model_copy(update={"index": position}) for position, hop in enumerate(self.hops, start=1)]
        return self.model_copy(update={"hops": hops})
