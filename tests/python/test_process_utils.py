"""Tests for subprocess helpers and privilege routing."""
from __future__ import annotations

import unittest
from pathlib import Path
from unittest import mock

from proxy_vm.errors import ToolInvocationFailed, ToolNotFound
from proxy_vm.process_utils import Invoker, ProcessResult, needs_privilege, run_command


class RunCommandTests(unittest.TestCase):
    def test_captures_output(self) -> None:
        result = run_command(["echo", "hello"])
        self.assertTrue(result.ok)
        self.assertEqual(result.stdout.strip(), "hello")
        self.assertEqual(result.command, ["echo", "hello"])

    def test_non_zero_exit_without_check(self) -> None:
        result = run_command(["false"])
        self.assertFalse(result.ok)

    def test_non_zero_exit_with_check(self) -> None:
        with self.assertRaises(ToolInvocationFailed) as ctx:
            run_command(["false"], check=True)
        self.assertEqual(ctx.exception.command, ["false"])

    def test_missing_executable(self) -> None:
        with self.assertRaises(ToolNotFound) as ctx:
            run_command(["proxy-vm-definitely-not-installed"])
        self.assertEqual(ctx.exception.tools, ["proxy-vm-definitely-not-installed"])

    def test_timeout(self) -> None:
        with self.assertRaises(ToolInvocationFailed) as ctx:
            run_command(["sleep", "5"], timeout=0.2)
        self.assertIn("timed out", str(ctx.exception))


class InvokerTests(unittest.TestCase):
    def test_direct_invoker_passes_argv_through(self) -> None:
        runner = mock.Mock(return_value=ProcessResult(["virsh"], 0, "", "", 0.0))
        invoker = Invoker(runner)

        invoker.run(["virsh", "list", Path("/tmp")])

        runner.assert_called_once_with(["virsh", "list", "/tmp"])
        self.assertFalse(invoker.elevated)

    def test_elevated_invoker_prefixes(self) -> None:
        runner = mock.Mock(return_value=ProcessResult(["pkexec"], 0, "", "", 0.0))
        invoker = Invoker(runner, prefix=("pkexec",))

        invoker.run(["rm", "-f", "/var/lib/libvirt/images/a.qcow2"], timeout=3)

        runner.assert_called_once_with(["pkexec", "rm", "-f", "/var/lib/libvirt/images/a.qcow2"], timeout=3)
        self.assertTrue(invoker.elevated)


class NeedsPrivilegeTests(unittest.TestCase):
    PREFIXES = [Path("/var/lib"), Path("/usr"), Path("/etc")]

    def test_paths_under_prefixes(self) -> None:
        self.assertTrue(needs_privilege("/var/lib/libvirt/images/x.qcow2", self.PREFIXES))
        self.assertTrue(needs_privilege("/etc", self.PREFIXES))

    def test_paths_outside_prefixes(self) -> None:
        self.assertFalse(needs_privilege("/home/me/VMS/work", self.PREFIXES))
        self.assertFalse(needs_privilege("/var/library/x", self.PREFIXES))
        self.assertFalse(needs_privilege("/var/lib/x", []))


if __name__ == "__main__":
    unittest.main()
