"""
Tests for Hyper-V operations (PowerShell is faked).
"""

import pytest

from almalab import hyperv
from almalab.lab_utils import HyperVError


VM_ROW = {
    "Name": "lab01",
    "State": "Running",
    "Generation": 2,
    "ProcessorCount": 4,
    "MemoryStartupMB": 8192,
    "Path": "C:\\HyperV\\VMs\\lab01",
    "Uptime": "00:10:00",
}


class TestQueries:
    """Tests for VM and switch queries."""

    def test_get_vm(self, fake_ps):
        """Test Get-VM output is normalized."""
        fake_ps.respond("Get-VM -Name 'lab01'", VM_ROW)
        vm = hyperv.get_vm("pwsh", "lab01")
        assert vm["state"] == "running"
        assert vm["generation"] == 2
        assert vm["cores"] == 4
        assert vm["memory"] == 8192

    def test_get_vm_missing(self, fake_ps):
        """Test a missing VM returns None."""
        assert hyperv.get_vm("pwsh", "nope") is None

    def test_list_vms(self, fake_ps):
        """Test every VM row is returned."""
        fake_ps.respond("Get-VM |", [VM_ROW, dict(VM_ROW, Name="lab02", State="Off")])
        vms = hyperv.list_vms("pwsh")
        assert [vm["name"] for vm in vms] == ["lab01", "lab02"]
        assert vms[1]["state"] == "off"

    def test_ip_addresses_ipv4_only(self, fake_ps):
        """Test IPv6 and link-local v6 addresses are filtered out."""
        fake_ps.respond("Get-VMNetworkAdapter", {
            "Name": "Network Adapter",
            "SwitchName": "AlmaLab",
            "MacAddress": "00155D000001",
            "MacAddressSpoofing": "On",
            "IPAddresses": ["192.168.100.20", "fe80::215:5dff:fe00:1"],
        })
        assert hyperv.get_vm_ip_addresses("pwsh", "lab01") == ["192.168.100.20"]
        adapter = hyperv.get_vm_network_adapters("pwsh", "lab01")[0]
        assert adapter["mac_spoofing"] is True

    def test_firmware(self, fake_ps):
        """Test Secure Boot and boot order parsing."""
        fake_ps.respond("Get-VMFirmware", {
            "SecureBoot": "On",
            "SecureBootTemplate": "MicrosoftWindows",
            "BootOrder": "Drive:C:\\isos\\alma.iso",
        })
        firmware = hyperv.get_vm_firmware("pwsh", "lab01")
        assert firmware == {
            "secure_boot": True,
            "secure_boot_template": "MicrosoftWindows",
            "boot_order": ["Drive:C:\\isos\\alma.iso"],
        }

    def test_firmware_gen1(self, fake_ps):
        """Test Gen1 VMs have no firmware settings."""
        assert hyperv.get_vm_firmware("pwsh", "lab01") is None

    def test_test_path(self, fake_ps):
        """Test Test-Path output parsing."""
        fake_ps.respond("Test-Path -LiteralPath 'C:\\a.vhdx'", "True")
        assert hyperv.test_path("pwsh", "C:\\a.vhdx")
        assert not hyperv.test_path("pwsh", "C:\\b.vhdx")

    def test_remove_missing_file(self, fake_ps):
        """Test removing a missing file does nothing."""
        assert hyperv.remove_file("pwsh", "C:\\gone.vhdx") is False
        assert not fake_ps.ran("Remove-Item")


class TestNetwork:
    """Tests for switch, NAT and firewall setup."""

    def test_switch_created(self, fake_ps):
        """Test a missing Internal switch is created."""
        assert hyperv.ensure_switch("pwsh", "AlmaLab") is True
        assert fake_ps.ran("New-VMSwitch -Name 'AlmaLab' -SwitchType Internal")

    def test_switch_exists(self, fake_ps):
        """Test an existing switch is left alone."""
        fake_ps.respond("Get-VMSwitch", {"Name": "AlmaLab", "SwitchType": "Internal"})
        assert hyperv.ensure_switch("pwsh", "AlmaLab") is False
        assert not fake_ps.ran("New-VMSwitch")

    def test_external_switch_needs_adapter(self, fake_ps):
        """Test External switches require a physical adapter."""
        with pytest.raises(HyperVError, match="external_adapter"):
            hyperv.ensure_switch("pwsh", "AlmaLab", "External")

    def test_external_switch(self, fake_ps):
        """Test External switches bind the adapter and keep host access."""
        hyperv.ensure_switch("pwsh", "LabExt", "External", adapter="Ethernet")
        assert fake_ps.ran("-NetAdapterName 'Ethernet' -AllowManagementOS $true")

    def test_nat_created(self, fake_ps):
        """Test the host IP and NAT network are created."""
        assert hyperv.ensure_nat("pwsh", "AlmaLab", "AlmaLabNAT", "192.168.100.0/24", "192.168.100.1")
        assert fake_ps.ran("New-NetIPAddress -IPAddress '192.168.100.1' -PrefixLength 24 "
                           "-InterfaceAlias 'vEthernet (AlmaLab)'")
        assert fake_ps.ran("New-NetNat -Name 'AlmaLabNAT' -InternalIPInterfaceAddressPrefix '192.168.100.0/24'")

    def test_nat_already_configured(self, fake_ps):
        """Test an existing configuration is not changed."""
        fake_ps.respond("Get-NetIPAddress", {"IPAddress": "192.168.100.1", "PrefixLength": 24})
        fake_ps.respond("Get-NetNat", {"Name": "AlmaLabNAT", "InternalIPInterfaceAddressPrefix": "192.168.100.0/24"})
        assert hyperv.ensure_nat("pwsh", "AlmaLab", "AlmaLabNAT", "192.168.100.0/24", "192.168.100.1") is False
        assert not fake_ps.ran("New-NetNat")

    def test_default_firewall_rules(self):
        """Test ICMP and the Packer HTTP range are allowed from the lab subnet."""
        rules = hyperv.default_firewall_rules("192.168.100.0/24", (8100, 8200))
        assert [rule["protocol"] for rule in rules] == ["ICMPv4", "TCP"]
        assert rules[1]["local_port"] == "8100-8200"
        assert all(rule["remote_address"] == "192.168.100.0/24" for rule in rules)

    def test_firewall_rules_created_once(self, fake_ps):
        """Test only missing rules are created."""
        fake_ps.respond("Get-NetFirewallRule -Name 'AlmaLab-ICMPv4-In'", {"Name": "AlmaLab-ICMPv4-In"})
        created = hyperv.ensure_firewall_rules("pwsh", hyperv.default_firewall_rules("192.168.100.0/24"))
        assert created == 1
        script = fake_ps.find("New-NetFirewallRule")[0]
        assert "-Group 'AlmaLab'" in script
        assert "-LocalPort '8000-9000'" in script

    def test_teardown_failures_reported(self, fake_ps):
        """Test removal helpers return False instead of raising."""
        fake_ps.fail("Remove-VMSwitch")
        assert hyperv.remove_switch("pwsh", "AlmaLab") is False
        assert hyperv.remove_nat("pwsh", "AlmaLabNAT") is True


class TestCreateVM:
    """Tests for VM creation scripts."""

    def create(self, fake_ps, **kwargs):
        args = dict(
            name="lab01",
            generation=2,
            cores=4,
            memory=8192,
            vm_path="C:\\HyperV\\VMs",
            vhd_file="C:\\HyperV\\VHDs\\lab01.vhdx",
            switch_name="AlmaLab",
            install_iso="C:\\ISOs\\alma.iso",
            seed_iso="C:\\HyperV\\VMs\\lab01\\lab01-oemdrv.iso",
        )
        args.update(kwargs)
        hyperv.create_vm("pwsh", **args)

    def test_gen2_nested(self, fake_ps):
        """Test a Gen2 nested VM gets SCSI disk, static memory, spoofing and UEFI CA."""
        self.create(fake_ps)
        assert fake_ps.ran("New-VM -Name 'lab01' -Generation 2 -MemoryStartupBytes ([int64]8192 * 1MB)")
        assert fake_ps.ran("-NoVHD")
        assert fake_ps.ran("Add-VMHardDiskDrive -VMName 'lab01' -ControllerType SCSI")
        assert fake_ps.ran("Set-VMProcessor -VMName 'lab01' -Count 4 -ExposeVirtualizationExtensions $true")
        assert fake_ps.ran("-DynamicMemoryEnabled $false")
        assert fake_ps.ran("-MacAddressSpoofing On")
        assert fake_ps.ran("-EnableSecureBoot On -SecureBootTemplate MicrosoftUEFICertificateAuthority")
        assert len(fake_ps.find("Add-VMDvdDrive")) == 2
        assert fake_ps.ran("-FirstBootDevice (Get-VMDvdDrive")

    def test_order_of_operations(self, fake_ps):
        """Test processor settings come after the VM exists and boot order is last."""
        self.create(fake_ps)
        first = fake_ps.scripts[0]
        last = fake_ps.scripts[-1]
        assert first.startswith("New-VM")
        assert "FirstBootDevice" in last

    def test_gen1(self, fake_ps):
        """Test a Gen1 VM uses IDE, the built-in DVD drive and BIOS order."""
        self.create(fake_ps, generation=1)
        assert fake_ps.ran("-ControllerType IDE")
        assert fake_ps.ran("Set-VMDvdDrive -VMName 'lab01' -ControllerNumber 1 -ControllerLocation 0")
        assert fake_ps.ran("Add-VMDvdDrive -VMName 'lab01' -ControllerNumber 1 -ControllerLocation 1")
        assert fake_ps.ran("Set-VMBios -VMName 'lab01' -StartupOrder @('CD', 'IDE', 'LegacyNetworkAdapter', 'Floppy')")
        assert not fake_ps.ran("Set-VMFirmware")

    def test_without_nesting_or_secure_boot(self, fake_ps):
        """Test dynamic memory and Secure Boot off when requested."""
        self.create(fake_ps, nested=False, secure_boot=False, install_iso=None)
        assert fake_ps.ran("-DynamicMemoryEnabled $true")
        assert not fake_ps.ran("MacAddressSpoofing")
        assert not fake_ps.ran("ExposeVirtualizationExtensions")
        assert fake_ps.ran("-EnableSecureBoot Off")
        assert fake_ps.ran("-FirstBootDevice (Get-VMHardDiskDrive")

    def test_invalid_generation(self, fake_ps):
        """Test generation 3 is rejected before any cmdlet runs."""
        with pytest.raises(ValueError):
            self.create(fake_ps, generation=3)
        assert fake_ps.scripts == []

    def test_failure_propagates(self, fake_ps):
        """Test a failing cmdlet stops creation."""
        fake_ps.fail("Add-VMHardDiskDrive")
        with pytest.raises(HyperVError):
            self.create(fake_ps)
        assert not fake_ps.ran("Set-VMProcessor")

    def test_dynamic_disk(self, fake_ps):
        """Test a new dynamic VHDX."""
        hyperv.create_vhd("pwsh", "C:\\v\\lab01.vhdx", size_gb=40)
        assert fake_ps.ran("-SizeBytes ([uint64]40 * 1GB) -Dynamic")

    def test_differencing_disk(self, fake_ps):
        """Test a differencing disk grows to the requested size."""
        hyperv.create_vhd("pwsh", "C:\\v\\lab01.vhdx", size_gb=60, parent_path="C:\\t\\template.vhdx")
        assert fake_ps.ran("-ParentPath 'C:\\t\\template.vhdx' -Differencing")
        assert fake_ps.ran("Resize-VHD")

    def test_differencing_resize_failure_is_not_fatal(self, fake_ps):
        """Test a failed resize keeps the disk."""
        fake_ps.fail("Resize-VHD")
        hyperv.create_vhd("pwsh", "C:\\v\\lab01.vhdx", size_gb=60, parent_path="C:\\t\\template.vhdx")


class TestPowerAndWaits:
    """Tests for start/stop and wait helpers."""

    def test_stop_flags(self, fake_ps):
        """Test graceful and hard stop flags."""
        hyperv.stop_vm("pwsh", "lab01")
        hyperv.stop_vm("pwsh", "lab01", turn_off=True)
        assert fake_ps.scripts == ["Stop-VM -Name 'lab01' -Force", "Stop-VM -Name 'lab01' -TurnOff"]

    def test_wait_for_state(self, fake_ps):
        """Test waiting until the VM reports the state."""
        states = iter(["Starting", "Running"])
        fake_ps.respond("Get-VM -Name", lambda: dict(VM_ROW, State=next(states)))
        assert hyperv.wait_for_vm_state("pwsh", "lab01", "running", max_wait=10, check_interval=1)

    def test_wait_for_state_timeout(self, fake_ps):
        """Test a timeout returns False."""
        fake_ps.respond("Get-VM -Name", dict(VM_ROW, State="Off"))
        assert not hyperv.wait_for_vm_state("pwsh", "lab01", "running", max_wait=4, check_interval=2)

    def test_wait_for_ip(self, fake_ps):
        """Test the first IPv4 address is returned."""
        fake_ps.respond("Get-VMNetworkAdapter", {"Name": "nic", "SwitchName": "AlmaLab",
                                                 "IPAddresses": ["192.168.100.30"]})
        assert hyperv.wait_for_vm_ip("pwsh", "lab01", max_wait=10) == "192.168.100.30"

    def test_wait_for_ip_timeout(self, fake_ps):
        """Test None is returned when no address appears."""
        assert hyperv.wait_for_vm_ip("pwsh", "lab01", max_wait=10, check_interval=5) is None

    def test_connect_hyperv_missing_module(self, fake_ps, config):
        """Test a missing Hyper-V module is explained."""
        fake_ps.fail("Get-Command -Module Hyper-V")
        with pytest.raises(HyperVError, match="Enable-WindowsOptionalFeature"):
            hyperv.connect_hyperv(config)
