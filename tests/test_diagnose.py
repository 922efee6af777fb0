"""
Tests for VM and seed ISO diagnostics.
"""

import pytest

from almalab.diagnose import (
    ERROR,
    OK,
    WARNING,
    check_cidata_files,
    check_seed_iso,
    diagnose_vm,
    finding,
    format_findings,
    render_guest_diagnostic_script,
)
from almalab.kickstart import generate_kickstart
from almalab.seed_iso import build_seed_iso, create_cloud_init_iso, create_kickstart_iso

from conftest import HASHED_PASSWORD, SSH_KEY


def levels(findings, check=None):
    return [item["level"] for item in findings if check is None or item["check"] == check]


@pytest.fixture
def seed_iso(tmp_path):
    """A valid cidata seed ISO."""
    path = str(tmp_path / "vms" / "lab01" / "lab01-cidata.iso")
    return create_cloud_init_iso(path, hostname="lab01", username="labuser", ssh_keys=[SSH_KEY])


@pytest.fixture
def healthy_vm(fake_ps, seed_iso):
    """Answer Hyper-V queries for a running, correctly configured Gen2 VM."""
    fake_ps.respond("Get-VM -Name 'lab01'", {"Name": "lab01", "State": "Running", "Generation": 2,
                                             "ProcessorCount": 4, "MemoryStartupMB": 8192})
    fake_ps.respond("Get-VMFirmware", {"SecureBoot": "On",
                                       "SecureBootTemplate": "MicrosoftUEFICertificateAuthority",
                                       "BootOrder": ["Drive:C:\\vhds\\lab01.vhdx", "Network:"]})
    fake_ps.respond("Get-VMProcessor", {"Count": 4, "ExposeVirtualizationExtensions": True})
    fake_ps.respond("Get-VMMemory", {"DynamicMemoryEnabled": False, "StartupMB": 8192})
    fake_ps.respond("Get-VMNetworkAdapter", [{"Name": "Network Adapter", "SwitchName": "AlmaLab",
                                              "MacAddress": "00155D010203", "MacAddressSpoofing": "On",
                                              "IPAddresses": ["192.168.100.20", "fe80::1"]}])
    fake_ps.respond("Get-VMSwitch -Name 'AlmaLab'", {"Name": "AlmaLab", "SwitchType": "Internal"})
    fake_ps.respond("Get-VMDvdDrive", [{"Path": seed_iso}, {"Path": None}])
    fake_ps.respond("Test-Path", "True")
    return fake_ps


class TestDiagnoseVM:
    """Tests for host-side VM checks."""

    def test_healthy_vm(self, config, healthy_vm):
        """Test a correctly configured VM has no errors or warnings."""
        findings = diagnose_vm(config, "lab01")
        assert ERROR not in levels(findings)
        assert WARNING not in levels(findings)
        assert levels(findings, "nested") == [OK]
        assert any("192.168.100.20" in item["message"] for item in findings if item["check"] == "ip")
        assert any("NoCloud volume" in item["message"] for item in findings if item["check"] == "seed-iso")

    def test_vm_not_found(self, config, fake_ps):
        """Test a missing VM yields a single error."""
        findings = diagnose_vm(config, "ghost")
        assert findings == [finding(ERROR, "vm", "VM 'ghost' not found")]

    def test_wrong_secure_boot_template(self, config, healthy_vm):
        """Test the Windows Secure Boot template is reported."""
        healthy_vm.respond("Get-VMFirmware", {"SecureBoot": "On", "SecureBootTemplate": "MicrosoftWindows",
                                              "BootOrder": []})
        findings = diagnose_vm(config, "lab01")
        assert levels(findings, "firmware") == [ERROR]

    def test_pxe_first(self, config, healthy_vm):
        """Test network boot first is a warning."""
        healthy_vm.respond("Get-VMFirmware", {"SecureBoot": "Off", "SecureBootTemplate": "",
                                              "BootOrder": "Network:"})
        findings = diagnose_vm(config, "lab01")
        assert levels(findings, "boot-order") == [WARNING]

    def test_dynamic_memory_with_nesting(self, config, healthy_vm):
        """Test dynamic memory breaks nested virtualization."""
        healthy_vm.respond("Get-VMMemory", {"DynamicMemoryEnabled": True, "StartupMB": 2048})
        findings = diagnose_vm(config, "lab01")
        assert levels(findings, "nested") == [ERROR]

    def test_nesting_disabled(self, config, healthy_vm):
        """Test missing virtualization extensions are a warning when nesting is configured."""
        healthy_vm.respond("Get-VMProcessor", {"Count": 4, "ExposeVirtualizationExtensions": False})
        findings = diagnose_vm(config, "lab01")
        assert levels(findings, "nested") == [WARNING]

    def test_missing_switch(self, config, healthy_vm):
        """Test an adapter pointing at a deleted switch is an error."""
        healthy_vm.respond("Get-VMSwitch -Name 'AlmaLab'", None)
        findings = diagnose_vm(config, "lab01")
        assert ERROR in levels(findings, "network")

    def test_mac_spoofing_off(self, config, healthy_vm):
        """Test MAC spoofing off is a warning for nested VMs."""
        healthy_vm.respond("Get-VMNetworkAdapter", [{"Name": "Network Adapter", "SwitchName": "AlmaLab",
                                                     "MacAddressSpoofing": "Off", "IPAddresses": []}])
        findings = diagnose_vm(config, "lab01")
        assert WARNING in levels(findings, "network")
        assert levels(findings, "ip") == [WARNING]

    def test_missing_iso(self, config, healthy_vm):
        """Test an attached ISO that no longer exists is an error."""
        healthy_vm.respond("Test-Path", "False")
        findings = diagnose_vm(config, "lab01")
        assert levels(findings, "dvd") == [ERROR]
        assert levels(findings, "seed-iso") == []

    def test_stopped_vm(self, config, healthy_vm):
        """Test guest checks are skipped for a stopped VM."""
        healthy_vm.respond("Get-VM -Name 'lab01'", {"Name": "lab01", "State": "Off", "Generation": 2})
        findings = diagnose_vm(config, "lab01")
        assert WARNING in levels(findings, "vm")
        assert levels(findings, "ip") == []

    def test_generation1_bios(self, config, healthy_vm):
        """Test Gen1 VMs report the BIOS startup order."""
        healthy_vm.respond("Get-VM -Name 'lab01'", {"Name": "lab01", "State": "Off", "Generation": 1})
        healthy_vm.respond("Get-VMBios", {"StartupOrder": ["CD", "IDE", "LegacyNetworkAdapter", "Floppy"]})
        findings = diagnose_vm(config, "lab01")
        assert levels(findings, "firmware") == []
        assert any("CD, IDE" in item["message"] for item in findings if item["check"] == "boot-order")


class TestSeedChecks:
    """Tests for seed ISO content checks."""

    def test_cidata_missing_meta_data(self):
        """Test meta-data is required."""
        findings = check_cidata_files({"user-data": "#cloud-config\nusers: []\n"})
        assert finding(ERROR, "seed-iso", "cidata volume is missing meta-data") in findings

    def test_cidata_bad_header(self):
        """Test user-data must start with #cloud-config."""
        findings = check_cidata_files({"user-data": "users: []\n", "meta-data": "instance-id: a\n"})
        assert levels(findings) == [ERROR]

    def test_cidata_invalid_yaml(self):
        """Test broken YAML is reported."""
        findings = check_cidata_files({"user-data": "#cloud-config\nusers: [\n", "meta-data": "instance-id: a\n"})
        assert levels(findings) == [ERROR]

    def test_cidata_no_instance_id(self):
        """Test meta-data without instance-id is a warning."""
        findings = check_cidata_files({"user-data": "#cloud-config\n{}\n", "meta-data": "local-hostname: a\n"})
        assert WARNING in levels(findings)

    def test_kickstart_iso_valid(self, tmp_path):
        """Test an OEMDRV volume with a valid ks.cfg."""
        path = create_kickstart_iso(generate_kickstart("lab01", HASHED_PASSWORD), str(tmp_path / "ks.iso"))
        assert levels(check_seed_iso(path)) == [OK]

    def test_kickstart_iso_invalid(self, tmp_path):
        """Test kickstart problems are reported per line."""
        path = create_kickstart_iso("rootpw secret\n", str(tmp_path / "ks.iso"))
        findings = check_seed_iso(path)
        assert findings
        assert set(levels(findings)) == {ERROR}

    def test_uppercase_cidata_label(self, tmp_path):
        """Test an uppercase CIDATA label is an error."""
        path = build_seed_iso({"user-data": "#cloud-config\n"}, str(tmp_path / "seed.iso"), "CIDATA")
        assert levels(check_seed_iso(path)) == [ERROR]

    def test_unexpected_label(self, tmp_path):
        """Test other labels are a warning."""
        path = build_seed_iso({"readme.txt": "hi"}, str(tmp_path / "other.iso"), "DATA")
        assert levels(check_seed_iso(path)) == [WARNING]

    def test_missing_iso(self, tmp_path):
        """Test a missing ISO is an error."""
        assert levels(check_seed_iso(str(tmp_path / "missing.iso"))) == [ERROR]


class TestOutput:
    """Tests for formatting and the guest script."""

    def test_format_findings(self):
        """Test symbols and the summary line."""
        text = format_findings([
            finding(OK, "vm", "VM exists"),
            finding(WARNING, "ip", "no address"),
            finding(ERROR, "network", "no switch"),
        ])
        assert "  ✓ [vm] VM exists" in text
        assert "  ✗ [network] no switch" in text
        assert text.endswith("1 error(s), 1 warning(s)")

    def test_guest_script(self):
        """Test the guest diagnostic covers status, datasource and seed media."""
        script = render_guest_diagnostic_script()
        assert script.startswith("#!/bin/bash\n")
        assert "cloud-init status --long" in script
        assert "ds-identify" in script
        assert "blkid -t LABEL=cidata" in script
