"""Role provisioning with compensating rollback.

``RoleProvisioner.create_role`` walks a fixed sequence of steps. Each
resource the run creates is pushed onto a :class:`ProvisioningLedger`
only after its create call succeeded, and a failure unwinds the ledger
in reverse order. Resources that already existed are never recorded, so
rollback cannot remove them.
"""

from __future__ import annotations

import shutil
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

import structlog
from pydantic import BaseModel, Field

from . import naming
from .adapter import LibvirtAdapter
from .errors import AlreadyExists, NotFound, PreconditionFailed, ProxyVmError
from .models import (
    ChainStrategy,
    GatewayMode,
    OpenVpnConfig,
    ProxyConfig,
    ProxyHop,
    VmInfo,
    VmState,
    WireGuardConfig,
    validate_role_name,
)
from .proxy_config import WriteHook, read_proxy_conf, stage_vpn_file, write_config_files
from .roles import RoleMeta, discover_roles, role_exists
from .settings import Settings
from .templates import Template, TemplateRegistry

logger = structlog.get_logger(__name__)


class ProvisionStep(str, Enum):
    VALIDATING = "validating"
    NETWORK_READY = "network_ready"
    CONFIG_WRITTEN = "config_written"
    DISK_READY = "disk_ready"
    VM_CREATED = "vm_created"
    METADATA_SAVED = "metadata_saved"
    APP_VM_CREATED = "app_vm_created"
    DONE = "done"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    CANCELLED = "cancelled"


class UndoKind(str, Enum):
    NETWORK = "network"
    ROLE_DIR = "role_dir"
    FILE = "file"
    OVERLAY = "overlay"
    VM = "vm"


@dataclass(frozen=True)
class UndoAction:
    kind: UndoKind
    target: str


class ProvisioningLedger:
    """Append-only record of what the current run created."""

    def __init__(self) -> None:
        self._actions: List[UndoAction] = []
        self.written_files: List[Path] = []

    def record(self, kind: UndoKind, target: object) -> None:
        self._actions.append(UndoAction(kind, str(target)))

    def note_written(self, path: Path) -> None:
        self.written_files.append(Path(path))

    def find(self, kind: UndoKind) -> Optional[UndoAction]:
        for action in self._actions:
            if action.kind is kind:
                return action
        return None

    def unwind(self) -> Iterator[UndoAction]:
        """Pop actions newest first."""
        while self._actions:
            yield self._actions.pop()

    def clear(self) -> None:
        self._actions.clear()
        self.written_files.clear()

    def __iter__(self) -> Iterator[UndoAction]:
        return iter(list(self._actions))

    def __len__(self) -> int:
        return len(self._actions)


class RoleRequest(BaseModel):
    """Everything needed to provision a new role."""

    name: str
    gw_template_id: str
    app_template_id: Optional[str] = None
    disp_template_id: Optional[str] = None
    gateway_mode: GatewayMode = GatewayMode.PROXY_CHAIN
    chain_strategy: ChainStrategy = ChainStrategy.STRICT
    hops: List[ProxyHop] = Field(default_factory=list)
    vpn_config_file: Optional[str] = None
    vpn_auth_file: Optional[str] = None
    wg_interface: str = "wg0"
    route_all_traffic: bool = True
    create_app_vm: bool = False
    lan_net: Optional[str] = None
    gw_ram_mb: Optional[int] = Field(None, ge=128)
    app_ram_mb: Optional[int] = Field(None, ge=256)
    gw_vcpus: Optional[int] = Field(None, ge=1)

    def proxy_config(self, role: str) -> ProxyConfig:
        wireguard = openvpn = None
        if self.gateway_mode is GatewayMode.WIREGUARD:
            wireguard = WireGuardConfig(
                config_path=self.vpn_config_file or "",
                interface_name=self.wg_interface,
                route_all_traffic=self.route_all_traffic,
            )
        elif self.gateway_mode is GatewayMode.OPENVPN:
            openvpn = OpenVpnConfig(
                config_path=self.vpn_config_file or "",
                auth_file=self.vpn_auth_file,
                route_all_traffic=self.route_all_traffic,
            )
        return ProxyConfig(
            role=role,
            gateway_mode=self.gateway_mode,
            chain_strategy=self.chain_strategy,
            hops=self.hops,
            wireguard=wireguard,
            openvpn=openvpn,
        ).renumbered()


@dataclass
class ProvisionResult:
    role: str
    gateway_vm: str
    role_network: str
    network_created: bool
    overlay: Path
    role_dir: Path
    app_vm: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class DeletionReport:
    role: str
    vms: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.failures


ProgressCallback = Callable[[ProvisionStep, str], None]


class RoleProvisioner:
    """Creates, reconfigures and tears down roles."""

    def __init__(
        self,
        adapter: LibvirtAdapter,
        settings: Settings,
        registry: TemplateRegistry,
        *,
        on_progress: Optional[ProgressCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
        rollback_on_failure: bool = True,
    ):
        self.adapter = adapter
        self.settings = settings
        self.registry = registry
        self.on_progress = on_progress
        self.rollback_on_failure = rollback_on_failure
        self._sleep = sleep
        self.ledger = ProvisioningLedger()
        self.step: Optional[ProvisionStep] = None
        self.log = logger.bind(component="role_provisioner")

    def _set_step(self, step: ProvisionStep, message: str) -> None:
        self.step = step
        self.log.info(message, step=step.value)
        if self.on_progress is not None:
            self.on_progress(step, message)

    def _best_effort(self, description: str, func: Callable, *args) -> bool:
        try:
            func(*args)
        except Exception as exc:  # teardown never escalates
            self.log.warning("Cleanup step failed", step=description, error=str(exc))
            return False
        return True

    # ------------------------------------------------------------------
    # Role creation
    # ------------------------------------------------------------------
    def create_role(self, request: RoleRequest) -> ProvisionResult:
        self.ledger.clear()
        self._set_step(ProvisionStep.VALIDATING, f"Validating role '{request.name}'")
        try:
            result = self._provision(request)
        except Exception as exc:
            self._set_step(ProvisionStep.FAILED, f"Provisioning failed: {exc}")
            if self.rollback_on_failure:
                self.rollback()
            raise
        self.ledger.clear()
        self._set_step(ProvisionStep.DONE, f"Role '{result.role}' created")
        return result

    def _provision(self, request: RoleRequest) -> ProvisionResult:
        settings = self.settings
        settings.validate_invariants()
        role = validate_role_name(request.name)
        role_dir = settings.role_dir(role)
        gw_name = naming.gateway_vm_name(role)
        overlay = self.adapter.gateway_overlay_path(role)

        if role_exists(role_dir):
            raise AlreadyExists("Role", role)
        proxy_config = request.proxy_config(role)
        proxy_config.validate_config()
        if self.adapter.vm_exists(gw_name):
            raise AlreadyExists("VM", gw_name)
        if overlay.exists():
            raise AlreadyExists("Overlay disk", str(overlay))

        template = self._require_template(request.gw_template_id, "Gateway")

        lan_net = request.lan_net or settings.lan_net
        self.adapter.ensure_lan_net_exists(lan_net)

        role_net = naming.role_network_name(role)
        network_created = self.adapter.ensure_role_network(role)
        if network_created:
            self.ledger.record(UndoKind.NETWORK, role_net)
        self._set_step(ProvisionStep.NETWORK_READY, f"Role network '{role_net}' ready")

        self._write_role_dir(role_dir, proxy_config)
        self._set_step(ProvisionStep.CONFIG_WRITTEN, f"Gateway config written to {role_dir}")

        self.adapter.create_overlay_disk(template.path, overlay)
        self.ledger.record(UndoKind.OVERLAY, overlay)
        self._set_step(ProvisionStep.DISK_READY, f"Overlay disk {overlay} created")

        ram_mb = request.gw_ram_mb or max(template.default_ram_mb, settings.gateway_ram_mb)
        self.adapter.create_gateway_vm(
            gw_name,
            overlay=overlay,
            lan_net=lan_net,
            role_net=role_net,
            role_dir=role_dir,
            os_variant=template.os_variant,
            ram_mb=ram_mb,
            vcpus=request.gw_vcpus,
        )
        self.ledger.record(UndoKind.VM, gw_name)
        self._set_step(ProvisionStep.VM_CREATED, f"Gateway VM '{gw_name}' created")

        result = ProvisionResult(
            role=role,
            gateway_vm=gw_name,
            role_network=role_net,
            network_created=network_created,
            overlay=overlay,
            role_dir=role_dir,
        )
        meta = RoleMeta(
            role_name=role,
            gateway_mode=request.gateway_mode,
            gw_template_id=request.gw_template_id,
            app_template_id=request.app_template_id,
            disp_template_id=request.disp_template_id,
            lan_net=request.lan_net,
            gw_ram_mb=request.gw_ram_mb,
            app_ram_mb=request.app_ram_mb,
            gw_vcpus=request.gw_vcpus,
        )
        self._save_meta(meta, role_dir, result)

        if request.create_app_vm:
            self._create_first_app_vm(meta, role_dir, result)
        return result

    def _require_template(self, template_id: Optional[str], what: str) -> Template:
        template = self.registry.get(template_id)
        if template is None:
            raise PreconditionFailed(f"{what} template '{template_id}' not found")
        template.validate_image()
        return template

    def _save_meta(self, meta: RoleMeta, role_dir: Path, result: ProvisionResult) -> None:
        try:
            meta.save(role_dir)
        except (OSError, ValueError) as exc:
            self.log.warning("Failed to save role metadata", role=meta.role_name, error=str(exc))
            result.warnings.append(f"Failed to save role metadata: {exc}")
            return
        self._set_step(ProvisionStep.METADATA_SAVED, "Role metadata saved")

    def _create_first_app_vm(self, meta: RoleMeta, role_dir: Path, result: ProvisionResult) -> None:
        try:
            result.app_vm = self._create_app_vm(meta)
        except (ProxyVmError, OSError) as exc:
            self.log.warning("Failed to create app VM", role=meta.role_name, error=str(exc))
            result.warnings.append(f"Failed to create app VM: {exc}")
            return
        self._save_meta(meta, role_dir, result)
        self._set_step(ProvisionStep.APP_VM_CREATED, f"App VM '{result.app_vm}' created")

    def _write_role_dir(self, role_dir: Path, config: ProxyConfig) -> None:
        created_dir = not role_dir.exists()
        role_dir.mkdir(parents=True, exist_ok=True)
        if created_dir:
            self.ledger.record(UndoKind.ROLE_DIR, role_dir)
        existing = set() if created_dir else {entry.name for entry in role_dir.iterdir()}

        def track(path: Path) -> None:
            if created_dir:
                self.ledger.note_written(path)
            elif path.name not in existing:
                existing.add(path.name)
                self.ledger.record(UndoKind.FILE, path)

        config = self._stage_vpn_files(config, role_dir, track)
        write_config_files(config, role_dir, on_write=track)

    @staticmethod
    def _stage_vpn_files(
        config: ProxyConfig, role_dir: Path, on_write: Optional[WriteHook] = None
    ) -> ProxyConfig:
        """Copy referenced VPN files into the role dir and point the config at ``/proxy``."""
        if config.gateway_mode is GatewayMode.WIREGUARD and config.wireguard is not None:
            guest, _ = stage_vpn_file(config.wireguard.config_path, role_dir, on_write)
            config = config.model_copy(
                update={"wireguard": config.wireguard.model_copy(update={"config_path": guest})}
            )
        elif config.gateway_mode is GatewayMode.OPENVPN and config.openvpn is not None:
            update = {}
            guest, _ = stage_vpn_file(config.openvpn.config_path, role_dir, on_write)
            update["config_path"] = guest
            if config.openvpn.auth_file:
                guest_auth, _ = stage_vpn_file(config.openvpn.auth_file, role_dir, on_write)
                update["auth_file"] = guest_auth
            config = config.model_copy(update={"openvpn": config.openvpn.model_copy(update=update)})
        return config

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------
    def rollback(self) -> None:
        """Compensate everything the ledger holds, newest first. Never raises."""
        if not len(self.ledger):
            return
        self._set_step(ProvisionStep.ROLLING_BACK, f"Rolling back {len(self.ledger)} resource(s)")
        for action in self.ledger.unwind():
            self._compensate(action)
        self.ledger.clear()
        self._set_step(ProvisionStep.CANCELLED, "Rollback complete")

    def cancel(self) -> None:
        self.rollback()

    def _compensate(self, action: UndoAction) -> None:
        target = action.target
        if action.kind is UndoKind.VM:
            self._best_effort(f"destroy VM {target}", self.adapter.destroy_vm, target)
            self._best_effort(f"undefine VM {target}", self.adapter.undefine_vm, target)
        elif action.kind is UndoKind.OVERLAY:
            self._best_effort(f"delete overlay {target}", self.adapter.delete_overlay_disk, target)
        elif action.kind is UndoKind.NETWORK:
            self._best_effort(f"destroy network {target}", self.adapter.destroy_network, target)
        elif action.kind is UndoKind.FILE:
            self._best_effort(f"remove file {target}", Path(target).unlink, True)
        elif action.kind is UndoKind.ROLE_DIR:
            self._best_effort(f"remove role dir {target}", self._remove_role_dir, Path(target))

    def _remove_role_dir(self, role_dir: Path) -> None:
        if not role_dir.exists():
            return
        ours = set(self.ledger.written_files)
        foreign = [entry for entry in role_dir.iterdir() if entry not in ours]
        if foreign:
            for path in ours:
                path.unlink(missing_ok=True)
            self.log.warning(
                "Role dir holds files this run did not write, leaving it",
                role_dir=str(role_dir),
                foreign=sorted(entry.name for entry in foreign),
            )
            return
        shutil.rmtree(role_dir)

    # ------------------------------------------------------------------
    # App and disposable VMs
    # ------------------------------------------------------------------
    def _create_app_vm(self, meta: RoleMeta, shared_dir: Optional[Path] = None) -> str:
        template = self._require_template(meta.app_template_id, "App")
        number = meta.app_vm_count + 1
        name = meta.app_vm_name(number)
        overlay = self.adapter.app_overlay_path(meta.role_name, number)

        self.adapter.create_overlay_disk(template.path, overlay)
        try:
            self.adapter.create_app_vm(
                name,
                overlay=overlay,
                role_net=meta.role_net_name(),
                os_variant=template.os_variant,
                ram_mb=meta.app_ram_mb or self.settings.app_ram_mb,
                shared_dir=shared_dir,
            )
        except ProxyVmError:
            self._best_effort(f"delete overlay {overlay}", self.adapter.delete_overlay_disk, overlay)
            raise
        meta.next_app_number()
        return name

    def _load_meta(self, role: str) -> Tuple[str, Path, RoleMeta]:
        role = validate_role_name(role)
        role_dir = self.settings.role_dir(role)
        return role, role_dir, RoleMeta.load(role_dir)

    def add_app_vm(self, role: str, shared_dir: Optional[Path] = None) -> str:
        role, role_dir, meta = self._load_meta(role)
        name = self._create_app_vm(meta, shared_dir)
        try:
            meta.save(role_dir)
        except OSError as exc:
            self.log.warning("Failed to save role metadata", role=role, error=str(exc))
        self.log.info("Created app VM", role=role, vm=name)
        return name

    def launch_disposable_vm(self, role: str) -> str:
        role, role_dir, meta = self._load_meta(role)
        template_id = meta.disp_template_id or meta.app_template_id
        template = self._require_template(template_id, "Disposable")

        stamp = naming.timestamp()
        name = naming.disposable_vm_name(role, stamp)
        overlay = self.adapter.disposable_overlay_path(role, stamp)

        self.adapter.create_overlay_disk(template.path, overlay)
        try:
            self.adapter.create_disposable_vm(
                name,
                overlay=overlay,
                role_net=meta.role_net_name(),
                os_variant=template.os_variant,
                ram_mb=self.settings.disp_ram_mb,
            )
        except ProxyVmError:
            self._best_effort(f"delete overlay {overlay}", self.adapter.delete_overlay_disk, overlay)
            raise
        self.log.info("Launched disposable VM", role=role, vm=name)
        return name

    # ------------------------------------------------------------------
    # Gateway reconfiguration
    # ------------------------------------------------------------------
    def load_gateway_config(self, role: str) -> ProxyConfig:
        role = validate_role_name(role)
        role_dir = self.settings.role_dir(role)
        try:
            return read_proxy_conf(role_dir, role)
        except FileNotFoundError:
            raise NotFound("Gateway config", str(role_dir)) from None

    def apply_gateway_config(self, role: str, config: ProxyConfig, restart: bool = True) -> bool:
        """Rewrite the gateway config; returns True when the gateway was restarted."""
        role = validate_role_name(role)
        role_dir = self.settings.role_dir(role)
        if not role_exists(role_dir):
            raise NotFound("Role", role)

        config = config.model_copy(update={"role": role}).renumbered()
        config.validate_config()
        config = self._stage_vpn_files(config, role_dir)
        write_config_files(config, role_dir)

        try:
            meta = RoleMeta.load(role_dir)
        except NotFound:
            self.log.warning("Role has no metadata, gateway mode not recorded", role=role)
        else:
            meta.gateway_mode = config.gateway_mode
            meta.save(role_dir)

        if not restart:
            return False
        gw_name = naming.gateway_vm_name(role)
        if not self.adapter.vm_exists(gw_name):
            self.log.warning("Gateway VM missing, config saved without restart", vm=gw_name)
            return False
        try:
            self.adapter.stop_vm(gw_name)
            self._sleep(self.settings.restart_settle_seconds)
            self.adapter.start_vm(gw_name)
        except ProxyVmError as exc:
            self.log.warning("Config saved but gateway restart failed", vm=gw_name, error=str(exc))
            return False
        return True

    # ------------------------------------------------------------------
    # Queries and VM control
    # ------------------------------------------------------------------
    def list_roles(self) -> List[str]:
        return discover_roles(self.settings.cfg_root)

    def role_vms(self, role: str) -> List[VmInfo]:
        return self.adapter.list_role_vms(validate_role_name(role))

    def _require_vm(self, name: str) -> VmInfo:
        info = self.adapter.get_vm_info(name)
        if info is None:
            raise NotFound("VM", name)
        return info

    def start_vm(self, name: str) -> bool:
        if self._require_vm(name).state is VmState.RUNNING:
            self.log.info("VM already running", vm=name)
            return False
        self.adapter.start_vm(name)
        return True

    def stop_vm(self, name: str) -> bool:
        if self._require_vm(name).state is VmState.SHUT_OFF:
            self.log.info("VM already stopped", vm=name)
            return False
        self.adapter.stop_vm(name)
        return True

    def test_hop(self, hop: ProxyHop) -> None:
        self.adapter.test_tcp_connection(hop.host, hop.port)

    # ------------------------------------------------------------------
    # Role deletion
    # ------------------------------------------------------------------
    def delete_role(self, role: str) -> DeletionReport:
        """Tear down everything a role may own. Every step is best-effort."""
        role = validate_role_name(role)
        role_dir = self.settings.role_dir(role)
        report = DeletionReport(role=role)
        log = self.log.bind(role=role)

        def attempt(description: str, func: Callable, *args) -> None:
            if not self._best_effort(description, func, *args):
                report.failures.append(description)

        names = {naming.gateway_vm_name(role)}
        try:
            names.update(vm.name for vm in self.adapter.list_role_vms(role))
        except ProxyVmError as exc:
            log.warning("Could not list role VMs", error=str(exc))
            report.failures.append("list VMs")

        app_count = 0
        try:
            app_count = RoleMeta.load(role_dir).app_vm_count
        except (NotFound, OSError, ValueError):
            pass
        names.update(naming.app_vm_name(role, n) for n in range(1, app_count + 1))

        report.vms = sorted(names)
        for name in report.vms:
            attempt(f"stop VM {name}", self.adapter.stop_vm, name)
            attempt(f"remove VM {name}", self.adapter.undefine_vm, name)

        attempt("delete gateway overlay", self.adapter.delete_overlay_disk, self.adapter.gateway_overlay_path(role))
        for number in range(1, max(self.settings.app_overlay_scan_limit, app_count) + 1):
            overlay = self.adapter.app_overlay_path(role, number)
            attempt(f"delete app overlay {number}", self.adapter.delete_overlay_disk, overlay)

        attempt("destroy role network", self.adapter.destroy_network, naming.role_network_name(role))

        if role_dir.exists():
            attempt("remove role dir", shutil.rmtree, role_dir)

        log.info("Role deleted", failures=len(report.failures))
        return report
