"""
Pytest configuration and shared fixtures.
"""

import textwrap

import pytest

from almalab.lab_utils import LabConfig, HyperVError

# A syntactically valid SHA-512 crypt hash; tests never need to verify it
HASHED_PASSWORD = "$6$rounds=4096$labsalt$" + "A" * 86

SSH_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIG9sYWJrZXlmb3J0ZXN0cw== lab@example"


class FakePowerShell:
    """Record PowerShell scripts and answer them from substring rules."""

    def __init__(self):
        self.scripts = []
        self.responses = []
        self.failures = []

    def respond(self, pattern, value):
        """Answer scripts containing pattern; later rules win."""
        self.responses.insert(0, (pattern, value))

    def fail(self, pattern, message="PowerShell command failed: boom"):
        """Raise HyperVError for scripts containing pattern."""
        self.failures.append((pattern, message))

    def _answer(self, script, default):
        for pattern, message in self.failures:
            if pattern in script:
                raise HyperVError(message, command=script, returncode=1)
        for pattern, value in self.responses:
            if pattern in script:
                return value() if callable(value) else value
        return default

    def run(self, script, json_output=False, check=True, powershell=None, timeout=None):
        self.scripts.append(script)
        return self._answer(script, None if json_output else "")

    def run_list(self, script, powershell=None):
        self.scripts.append(script)
        result = self._answer(script, [])
        if result is None:
            return []
        return result if isinstance(result, list) else [result]

    def run_retry(self, script, max_retries=3, json_output=False, powershell=None):
        return self.run(script, json_output=json_output)

    def ran(self, pattern):
        return any(pattern in script for script in self.scripts)

    def find(self, pattern):
        return [script for script in self.scripts if pattern in script]


@pytest.fixture
def fake_ps(monkeypatch):
    """Replace the PowerShell bridge used by the Hyper-V module."""
    fake = FakePowerShell()
    monkeypatch.setattr("almalab.hyperv.run_powershell", fake.run)
    monkeypatch.setattr("almalab.hyperv.run_powershell_list", fake.run_list)
    monkeypatch.setattr("almalab.hyperv.run_with_retry", fake.run_retry)
    monkeypatch.setattr("almalab.hyperv.time.sleep", lambda seconds: None)
    return fake


@pytest.fixture
def lab_dirs(tmp_path):
    """Create VM, VHD and ISO directories under tmp_path."""
    dirs = {
        "vm_path": tmp_path / "vms",
        "vhd_path": tmp_path / "vhds",
        "iso_dir": tmp_path / "isos",
    }
    for path in dirs.values():
        path.mkdir()
    return dirs


@pytest.fixture
def ssh_key_file(tmp_path):
    """Write a public key file."""
    path = tmp_path / "id_ed25519.pub"
    path.write_text(SSH_KEY + "\n")
    return path


@pytest.fixture
def config_file(tmp_path, lab_dirs, ssh_key_file):
    """Write a complete almalab.yaml pointing at tmp_path directories."""
    path = tmp_path / "almalab.yaml"
    path.write_text(textwrap.dedent(f"""\
        hyperv:
          powershell: pwsh
          vm_path: {lab_dirs['vm_path']}
          vhd_path: {lab_dirs['vhd_path']}
          switch_name: AlmaLab
          switch_type: Internal
          nat_name: AlmaLabNAT
          nat_subnet: 192.168.100.0/24

        iso:
          directory: {lab_dirs['iso_dir']}
          release: alma9
          flavour: minimal

        defaults:
          generation: 2
          cores: 4
          memory: 8192
          disk_size: 60
          provisioning: kickstart
          username: labuser
          password: '{HASHED_PASSWORD}'
          root_password: '{HASHED_PASSWORD}'
          ssh_key_file: {ssh_key_file}
          timezone: Europe/Berlin

        network:
          ipaddress: dhcp
          domain: lab.local
          dns_servers: [192.168.100.1]

        packer:
          build_dir: {tmp_path / 'packer-build'}
          output_dir: {tmp_path / 'packer-output'}
          ssh_password: packerpass

        postinstall:
          docker: false
          monitoring_tools: false
          update: false
        """))
    return path


@pytest.fixture
def config(config_file):
    """Load the test configuration."""
    return LabConfig(str(config_file))
