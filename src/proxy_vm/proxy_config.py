"""Gateway configuration files: ``proxy.conf`` and ``apply-proxy.sh``.

``proxy.conf`` is a shell-sourceable ``KEY=VALUE`` file read inside the
gateway VM from the ``/proxy`` mount. ``apply-proxy.sh`` turns it into a
proxychains configuration.
"""

from __future__ import annotations

import shlex
import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from .models import (
    ChainStrategy,
    GatewayMode,
    OpenVpnConfig,
    ProxyConfig,
    ProxyHop,
    ProxyType,
    WireGuardConfig,
)
from .roles import APPLY_SCRIPT_FILE, PROXY_CONF_FILE

logger = structlog.get_logger(__name__)

GUEST_MOUNT = "/proxy"

_COMPAT_KEYS = ("HOST", "PORT", "USER", "PASS")


def _assign(key: str, value: object = "") -> str:
    if value is None:
        value = ""
    if isinstance(value, bool):
        value = "true" if value else "false"
    text = str(value)
    return f"{key}={shlex.quote(text) if text else ''}"


def generate_proxy_conf(config: ProxyConfig) -> str:
    config = config.renumbered()
    lines: List[str] = [
        f"# Proxy config for role: {config.role}",
        _assign("GATEWAY_MODE", config.gateway_mode.value),
        _assign("CHAIN_STRATEGY", config.chain_strategy.value),
        _assign("PROXY_COUNT", len(config.hops)),
        "",
    ]

    compat: Dict[str, object] = {}
    if config.gateway_mode is GatewayMode.PROXY_CHAIN and config.hops:
        lines.append("# Proxy chain configuration")
        for hop in config.hops:
            prefix = f"PROXY_{hop.index}_"
            lines.append(_assign(prefix + "TYPE", hop.proxy_type.value))
            lines.append(_assign(prefix + "HOST", hop.host))
            lines.append(_assign(prefix + "PORT", hop.port))
            lines.append(_assign(prefix + "USER", hop.username))
            lines.append(_assign(prefix + "PASS", hop.password))
            lines.append(_assign(prefix + "LABEL", hop.label))
        lines.append("")
        first = config.hops[0]
        compat = {
            "ACTIVE_PROTOCOL": first.proxy_type.value,
            f"{first.proxy_type.value}_HOST": first.host,
            f"{first.proxy_type.value}_PORT": first.port,
            f"{first.proxy_type.value}_USER": first.username,
            f"{first.proxy_type.value}_PASS": first.password,
        }

    lines.append("# First proxy (for compatibility)")
    lines.append(_assign("ACTIVE_PROTOCOL", compat.get("ACTIVE_PROTOCOL")))
    for proxy_type in ProxyType:
        for suffix in _COMPAT_KEYS:
            key = f"{proxy_type.value}_{suffix}"
            lines.append(_assign(key, compat.get(key)))

    lines.append("")
    lines.append("# VPN / other modes")
    wg = config.wireguard
    lines.append(_assign("WG_CONFIG_PATH", wg.config_path if wg else ""))
    lines.append(_assign("WG_INTERFACE_NAME", wg.interface_name if wg else ""))
    lines.append(_assign("WG_ROUTE_ALL_TRAFFIC", wg.route_all_traffic if wg else ""))
    ovpn = config.openvpn
    lines.append(_assign("OPENVPN_CONFIG_PATH", ovpn.config_path if ovpn else ""))
    lines.append(_assign("OPENVPN_AUTH_FILE", ovpn.auth_file if ovpn else ""))
    lines.append(_assign("OPENVPN_ROUTE_ALL_TRAFFIC", ovpn.route_all_traffic if ovpn else ""))
    return "\n".join(lines) + "\n"


def _read_assignments(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            tokens = shlex.split(line)
        except ValueError:
            tokens = [line]
        if not tokens:
            continue
        key, sep, value = tokens[0].partition("=")
        if sep:
            values[key.strip()] = value
    return values


def _flag(value: Optional[str], default: bool = True) -> bool:
    if not value:
        return default
    return value.strip().lower() in ("true", "yes", "1")


def parse_proxy_conf(text: str, role: str) -> ProxyConfig:
    """Rebuild a :class:`ProxyConfig` from ``proxy.conf`` text.

    Unknown keys are ignored; a missing or unknown mode falls back to a
    proxy chain.
    """
    values = _read_assignments(text)

    try:
        mode = GatewayMode(values.get("GATEWAY_MODE", ""))
    except ValueError:
        mode = GatewayMode.PROXY_CHAIN
    try:
        strategy = ChainStrategy(values.get("CHAIN_STRATEGY", ""))
    except ValueError:
        strategy = ChainStrategy.STRICT

    hops: List[ProxyHop] = []
    try:
        count = int(values.get("PROXY_COUNT", "0") or 0)
    except ValueError:
        count = 0
    for index in range(1, count + 1):
        prefix = f"PROXY_{index}_"
        host = values.get(prefix + "HOST", "")
        if not host:
            continue
        try:
            port = int(values.get(prefix + "PORT", "") or 0)
        except ValueError:
            port = 0
        proxy_type = ProxyType.HTTP if values.get(prefix + "TYPE", "").upper() == "HTTP" else ProxyType.SOCKS5
        hops.append(
            ProxyHop(
                index=len(hops) + 1,
                proxy_type=proxy_type,
                host=host,
                port=port,
                username=values.get(prefix + "USER"),
                password=values.get(prefix + "PASS"),
                label=values.get(prefix + "LABEL"),
            )
        )

    wireguard = None
    if values.get("WG_CONFIG_PATH"):
        wireguard = WireGuardConfig(
            config_path=values["WG_CONFIG_PATH"],
            interface_name=values.get("WG_INTERFACE_NAME") or "wg0",
            route_all_traffic=_flag(values.get("WG_ROUTE_ALL_TRAFFIC")),
        )
    openvpn = None
    if values.get("OPENVPN_CONFIG_PATH"):
        openvpn = OpenVpnConfig(
            config_path=values["OPENVPN_CONFIG_PATH"],
            auth_file=values.get("OPENVPN_AUTH_FILE") or None,
            route_all_traffic=_flag(values.get("OPENVPN_ROUTE_ALL_TRAFFIC")),
        )

    return ProxyConfig(
        role=role,
        gateway_mode=mode,
        chain_strategy=strategy,
        hops=hops,
        wireguard=wireguard,
        openvpn=openvpn,
    )


def read_proxy_conf(role_dir: Path, role: str) -> ProxyConfig:
    return parse_proxy_conf((Path(role_dir) / PROXY_CONF_FILE).read_text(), role)


APPLY_SCRIPT_TEMPLATE = r"""#!/usr/bin/env bash
set -euo pipefail

ROLE="__ROLE__"
CONF="/proxy/proxy.conf"
OUT="/etc/proxychains.conf"

log() { echo "[apply-proxy][${ROLE}] $*"; }

if [[ ! -f "$CONF" ]]; then
  log "Config file $CONF not found, nothing to do."
  exit 0
fi

# shellcheck disable=SC1090
. "$CONF" || { log "Failed to source config from $CONF."; exit 1; }

write_header() {
  cat > "$OUT" <<EOC
# Auto-generated by apply-proxy.sh for role ${ROLE}
$1
proxy_dns
tcp_read_time_out 15000
tcp_connect_time_out 8000

[ProxyList]
EOC
}

emit() {
  local kind="$1" host="$2" port="$3" user="$4" pass="$5"
  if [[ -n "$user" || -n "$pass" ]]; then
    echo "$kind $host $port $user $pass" >> "$OUT"
  else
    echo "$kind $host $port" >> "$OUT"
  fi
}

MODE="${GATEWAY_MODE:-}"
if [[ "$MODE" = "PROXY_CHAIN" ]]; then
  COUNT="${PROXY_COUNT:-0}"
  if ! [[ "$COUNT" =~ ^[0-9]+$ ]] || [[ "$COUNT" -lt 1 ]]; then
    log "PROXY_CHAIN mode but PROXY_COUNT is invalid ('$COUNT')."
    exit 0
  fi

  TMP="$(mktemp)"
  REAL_OUT="$OUT"
  OUT="$TMP"
  write_header "${CHAIN_STRATEGY:-strict_chain}"

  any=0
  for ((i=1; i<=COUNT; i++)); do
    t="PROXY_${i}_TYPE"; h="PROXY_${i}_HOST"; p="PROXY_${i}_PORT"
    u="PROXY_${i}_USER"; pw="PROXY_${i}_PASS"
    T="${!t:-}"; H="${!h:-}"; P="${!p:-}"; U="${!u:-}"; PW="${!pw:-}"
    if [[ -z "$T" || -z "$H" || -z "$P" ]]; then
      log "Proxy $i incomplete (type/host/port missing), skipping."
      continue
    fi
    case "$T" in
      SOCKS5|socks5) emit socks5 "$H" "$P" "$U" "$PW"; any=1 ;;
      HTTP|http) emit http "$H" "$P" "$U" "$PW"; any=1 ;;
      *) log "Proxy $i has unsupported type '$T', skipping." ;;
    esac
  done

  if [[ "$any" -eq 0 ]]; then
    rm -f "$TMP"
    log "No valid proxies found in chain, leaving $REAL_OUT untouched."
    exit 0
  fi

  install -m 0644 "$TMP" "$REAL_OUT"
  rm -f "$TMP"
  log "proxychains.conf updated for PROXY_CHAIN (count=$COUNT)."
  exit 0
fi

case "${ACTIVE_PROTOCOL:-}" in
  SOCKS5)
    if [[ -z "${SOCKS5_HOST:-}" || -z "${SOCKS5_PORT:-}" ]]; then
      log "SOCKS5 selected but SOCKS5_HOST or SOCKS5_PORT is empty."
      exit 0
    fi
    write_header strict_chain
    emit socks5 "$SOCKS5_HOST" "$SOCKS5_PORT" "${SOCKS5_USER:-}" "${SOCKS5_PASS:-}"
    log "proxychains.conf updated for single SOCKS5."
    ;;
  HTTP)
    if [[ -z "${HTTP_HOST:-}" || -z "${HTTP_PORT:-}" ]]; then
      log "HTTP selected but HTTP_HOST or HTTP_PORT is empty."
      exit 0
    fi
    write_header strict_chain
    emit http "$HTTP_HOST" "$HTTP_PORT" "${HTTP_USER:-}" "${HTTP_PASS:-}"
    log "proxychains.conf updated for single HTTP."
    ;;
  *)
    log "GATEWAY_MODE='${MODE}' is handled by the VPN units, nothing to do here."
    ;;
esac

exit 0
"""


def generate_apply_script(role: str) -> str:
    return APPLY_SCRIPT_TEMPLATE.replace("__ROLE__", role)


WriteHook = Callable[[Path], None]


def write_config_files(
    config: ProxyConfig, role_dir: Path, on_write: Optional[WriteHook] = None
) -> List[Path]:
    """Write ``proxy.conf`` and ``apply-proxy.sh``; return the written paths.

    ``on_write`` is called with each target before it is written, so a
    caller tracking its files also sees a file left half-written.
    """
    role_dir = Path(role_dir)
    role_dir.mkdir(parents=True, exist_ok=True)

    conf_path = role_dir / PROXY_CONF_FILE
    if on_write is not None:
        on_write(conf_path)
    conf_path.write_text(generate_proxy_conf(config))

    script_path = role_dir / APPLY_SCRIPT_FILE
    if on_write is not None:
        on_write(script_path)
    script_path.write_text(generate_apply_script(config.role))
    script_path.chmod(0o755)

    logger.info("Wrote gateway config", role=config.role, role_dir=str(role_dir))
    return [conf_path, script_path]


def stage_vpn_file(
    source: str, role_dir: Path, on_write: Optional[WriteHook] = None
) -> Tuple[str, Optional[Path]]:
    """Copy a VPN credential file into the role dir.

    Returns the guest path (``/proxy/<name>``) and the host path written,
    or ``None`` when ``source`` names a file already in the role dir.
    """
    source_path = Path(source).expanduser()
    name = source_path.name
    guest_path = f"{GUEST_MOUNT}/{name}"
    dest = Path(role_dir) / name
    if not source_path.is_file() or source_path.resolve() == dest.resolve():
        return guest_path, None
    dest.parent.mkdir(parents=True, exist_ok=True)
    if on_write is not None:
        on_write(dest)
    shutil.copy2(source_path, dest)
    return guest_path, dest
