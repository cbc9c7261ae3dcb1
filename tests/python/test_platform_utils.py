"""Lightweight tests for PlatformManager helpers."""
from __future__ import annotations

import unittest
from unittest import mock

from proxy_vm.errors import PreconditionFailed
from proxy_vm.platform_utils import PlatformManager


class PlatformManagerTests(unittest.TestCase):
    def test_check_prerequisites_surfaces_missing(self) -> None:
        pm = PlatformManager()
        with mock.patch("proxy_vm.platform_utils.shutil.which", return_value=None):
            result = pm.check_prerequisites()
        self.assertFalse(result["success"])
        self.assertEqual(result["missing"], ["virsh", "virt-install", "qemu-img"])
        self.assertIn("libvirt-clients", result["hint"])

    def test_libvirt_access_problem_is_a_warning(self) -> None:
        adapter = mock.MagicMock(name="LibvirtAdapterMock")
        adapter.settings.elevation_command = "pkexec"
        adapter.check_libvirt_access.side_effect = PreconditionFailed("Cannot access libvirt")
        pm = PlatformManager(adapter)

        with mock.patch("proxy_vm.platform_utils.shutil.which", return_value="/usr/bin/tool"):
            result = pm.check_prerequisites()

        self.assertTrue(result["success"])
        self.assertEqual(result["warnings"], ["Cannot access libvirt"])

    def test_missing_elevation_command_warns(self) -> None:
        pm = PlatformManager()

        def which(name: str):
            return None if name == "pkexec" else f"/usr/bin/{name}"

        with mock.patch("proxy_vm.platform_utils.shutil.which", side_effect=which):
            result = pm.check_prerequisites()

        self.assertTrue(result["success"])
        self.assertEqual(len(result["warnings"]), 1)
        self.assertIn("pkexec", result["warnings"][0])


if __name__ == "__main__":
    unittest.main()
