"""In-memory stand-in for virsh, virt-install, qemu-img and friends.

Passed to ``LibvirtAdapter(runner=...)`` so tests can drive the adapter
and provisioner without a libvirt host.
"""
from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from proxy_vm.errors import ToolNotFound
from proxy_vm.process_utils import ProcessResult


class FakeToolchain:
    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.networks: Dict[str, Dict[str, bool]] = {}
        self.domains: Dict[str, Dict[str, object]] = {}
        self.backing: Dict[str, str] = {}
        self.failures: Dict[Tuple[str, ...], str] = {}
        self.missing_tools: set = set()

    # -- test helpers ---------------------------------------------------
    def add_network(self, name: str, active: bool = True, autostart: bool = True) -> None:
        self.networks[name] = {"active": active, "autostart": autostart}

    def add_domain(self, name: str, state: str = "running", disk: Optional[str] = None) -> None:
        self.domains[name] = {"state": state, "disk": disk, "transient": False, "argv": []}

    def fail(self, *prefix: str, stderr: str = "error: simulated failure") -> None:
        self.failures[tuple(prefix)] = stderr

    def commands(self, *prefix: str) -> List[List[str]]:
        """Recorded calls (without elevation prefix) starting with ``prefix``."""
        found = []
        for call in self.calls:
            argv = call[1:] if call and call[0] == "pkexec" else call
            if tuple(argv[: len(prefix)]) == prefix:
                found.append(argv)
        return found

    def elevated(self) -> List[List[str]]:
        return [call for call in self.calls if call and call[0] == "pkexec"]

    # -- runner ---------------------------------------------------------
    def __call__(self, command, **kwargs) -> ProcessResult:
        full = [str(part) for part in command]
        self.calls.append(full)
        argv = full[1:] if full[0] == "pkexec" else full
        tool = argv[0]
        if tool in self.missing_tools:
            raise ToolNotFound([tool])
        if tool == "virsh" and len(argv) > 2 and argv[1] == "-c":
            argv = [argv[0]] + argv[3:]
        for prefix, stderr in self.failures.items():
            if tuple(argv[: len(prefix)]) == prefix:
                return ProcessResult(full, 1, "", stderr, 0.0)
        handler = getattr(self, "_" + tool.replace("-", "_"))
        code, stdout, stderr = handler(argv[1:])
        return ProcessResult(full, code, stdout, stderr, 0.0)

    # -- virsh ----------------------------------------------------------
    def _virsh(self, args: List[str]):
        sub, rest = args[0], args[1:]
        return getattr(self, "_virsh_" + sub.replace("-", "_"))(rest)

    @staticmethod
    def _no_network(name: str):
        return 1, "", f"error: failed to get network '{name}'\nerror: Network not found: no network with matching name '{name}'"

    @staticmethod
    def _no_domain(name: str):
        return 1, "", f"error: failed to get domain '{name}'"

    def _virsh_net_info(self, args):
        name = args[0]
        net = self.networks.get(name)
        if net is None:
            return self._no_network(name)
        yes = lambda flag: "yes" if flag else "no"  # noqa: E731
        out = (
            f"Name:           {name}\n"
            "UUID:           6f0b8f3c-0000-4000-8000-000000000000\n"
            f"Active:         {yes(net['active'])}\n"
            "Persistent:     yes\n"
            f"Autostart:      {yes(net['autostart'])}\n"
            "Bridge:         virbr7\n"
        )
        return 0, out, ""

    def _virsh_net_define(self, args):
        xml = Path(args[0]).read_text()
        name = re.search(r"<name>(.*?)</name>", xml).group(1)
        self.networks[name] = {"active": False, "autostart": False}
        return 0, f"Network {name} defined from {args[0]}\n", ""

    def _virsh_net_autostart(self, args):
        if args[0] not in self.networks:
            return self._no_network(args[0])
        self.networks[args[0]]["autostart"] = True
        return 0, f"Network {args[0]} marked as autostarted\n", ""

    def _virsh_net_start(self, args):
        net = self.networks.get(args[0])
        if net is None:
            return self._no_network(args[0])
        net["active"] = True
        return 0, f"Network {args[0]} started\n", ""

    def _virsh_net_destroy(self, args):
        net = self.networks.get(args[0])
        if net is None:
            return self._no_network(args[0])
        if not net["active"]:
            return 1, "", "error: Requested operation is not valid: network is not active"
        net["active"] = False
        return 0, f"Network {args[0]} destroyed\n", ""

    def _virsh_net_undefine(self, args):
        if args[0] not in self.networks:
            return self._no_network(args[0])
        del self.networks[args[0]]
        return 0, f"Network {args[0]} has been undefined\n", ""

    def _virsh_net_list(self, args):
        return 0, "".join(f"{name}\n" for name in sorted(self.networks)) + "\n", ""

    def _virsh_list(self, args):
        if "--name" in args:
            return 0, "".join(f"{name}\n" for name in sorted(self.domains)) + "\n", ""
        return 0, " Id   Name   State\n--------------------\n", ""

    def _virsh_dominfo(self, args):
        dom = self.domains.get(args[0])
        if dom is None:
            return self._no_domain(args[0])
        return 0, f"Id:             -\nName:           {args[0]}\nOS Type:        hvm\nState:          {dom['state']}\n", ""

    def _virsh_start(self, args):
        dom = self.domains.get(args[0])
        if dom is None:
            return self._no_domain(args[0])
        if dom["state"] == "running":
            return 1, "", "error: Failed to start domain\nerror: Requested operation is not valid: domain is already running"
        dom["state"] = "running"
        return 0, f"Domain '{args[0]}' started\n", ""

    def _stop(self, name: str, verb: str):
        dom = self.domains.get(name)
        if dom is None:
            return self._no_domain(name)
        if dom["state"] != "running":
            return 1, "", f"error: Failed to {verb} domain '{name}'\nerror: Requested operation is not valid: domain is not running"
        if dom["transient"]:
            del self.domains[name]
        else:
            dom["state"] = "shut off"
        return 0, "", ""

    def _virsh_shutdown(self, args):
        return self._stop(args[0], "shutdown")

    def _virsh_destroy(self, args):
        return self._stop(args[0], "destroy")

    def _virsh_undefine(self, args):
        if args[0] not in self.domains:
            return self._no_domain(args[0])
        del self.domains[args[0]]
        return 0, f"Domain '{args[0]}' has been undefined\n", ""

    def _virsh_dumpxml(self, args):
        dom = self.domains.get(args[0])
        if dom is None:
            return self._no_domain(args[0])
        source = f"<source file='{dom['disk']}'/>" if dom["disk"] else ""
        xml = (
            f"<domain type='kvm'><name>{args[0]}</name><devices>"
            "<disk type='file' device='cdrom'><source file='/isos/boot.iso'/></disk>"
            f"<disk type='file' device='disk'><driver name='qemu' type='qcow2'/>{source}"
            "<target dev='vda' bus='virtio'/></disk></devices></domain>"
        )
        return 0, xml, ""

    # -- virt-install ---------------------------------------------------
    def _virt_install(self, args):
        name = args[args.index("--name") + 1]
        disk_spec = args[args.index("--disk") + 1]
        disk = disk_spec.split(",")[0].split("=", 1)[1]
        self.domains[name] = {
            "state": "running",
            "disk": disk,
            "transient": "--transient" in args,
            "argv": ["virt-install", *args],
        }
        return 0, "Domain creation completed.\n", ""

    # -- qemu-img -------------------------------------------------------
    def _qemu_img(self, args):
        if args[0] == "create":
            backing = args[args.index("-b") + 1]
            overlay = args[-1]
            Path(overlay).write_bytes(b"QFI\xfb")
            self.backing[overlay] = backing
            return 0, f"Formatting '{overlay}', fmt=qcow2\n", ""
        path = args[-1]
        if not Path(path).exists():
            return 1, "", f"qemu-img: Could not open '{path}': No such file or directory"
        lines = [f"image: {path}", "file format: qcow2", "virtual size: 20 GiB"]
        if path in self.backing:
            lines.append(f"backing file: {self.backing[path]} (actual path: {self.backing[path]})")
        return 0, "\n".join(lines) + "\n", ""

    # -- coreutils ------------------------------------------------------
    def _mkdir(self, args):
        Path(args[-1]).mkdir(parents=True, exist_ok=True)
        return 0, "", ""

    def _rm(self, args):
        Path(args[-1]).unlink(missing_ok=True)
        return 0, "", ""

    def _cp(self, args):
        shutil.copyfile(args[-2], args[-1])
        return 0, "", ""

    def _chmod(self, args):
        return 0, "", ""

    def _chown(self, args):
        return 0, "", ""
