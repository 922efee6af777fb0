#!/usr/bin/env python3
"""
AlmaLinux Lab Utilities

Common functions for lab configuration, logging, cloud-init generation,
and password handling.
"""

import ipaddress
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional
import yaml

# Configure logging
# Use a logger named after the module
logger = logging.getLogger(__name__)

# Set up default logging configuration if not already configured
if not logger.handlers:
    # Handler for INFO/WARNING (stdout) - filters out ERROR and above
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.addFilter(lambda record: record.levelno < logging.ERROR)
    console_formatter = logging.Formatter('%(message)s')
    console_handler.setFormatter(console_formatter)

    # Handler for ERROR/CRITICAL (stderr)
    error_handler = logging.StreamHandler(sys.stderr)
    error_handler.setLevel(logging.ERROR)
    error_formatter = logging.Formatter('Error: %(message)s')
    error_handler.setFormatter(error_formatter)

    logger.addHandler(console_handler)
    logger.addHandler(error_handler)
    logger.setLevel(logging.INFO)


# Custom exceptions for better error handling

class LabError(Exception):
    """Base exception for lab automation errors"""
    pass


class LabConfigError(LabError):
    """Raised when the lab configuration file is invalid"""
    pass


class HyperVError(LabError):
    """Raised when a Hyper-V PowerShell command fails"""

    def __init__(self, message: str, command: Optional[str] = None,
                 returncode: Optional[int] = None, stderr: str = ''):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class ISODownloadError(LabError):
    """Raised when an ISO cannot be downloaded"""
    pass


class ChecksumMismatchError(ISODownloadError):
    """Raised when a downloaded file does not match its published checksum"""
    pass


class PackerError(LabError):
    """Raised when a Packer command fails"""
    pass


class SeedISOError(LabError):
    """Raised when a kickstart or cloud-init seed ISO cannot be created or read"""
    pass


class VMCreationError(LabError):
    """Raised when VM creation fails (partial resources are cleaned up first)"""
    pass


class VMDeletionError(LabError):
    """Raised when a VM cannot be found or removed"""
    pass


# AlmaLinux releases and installation ISO flavours
ALMA_RELEASES = {
    'alma8': {
        'name': 'AlmaLinux 8',
        'major': '8',
        'flavours': ['boot', 'minimal', 'dvd'],
    },
    'alma9': {
        'name': 'AlmaLinux 9',
        'major': '9',
        'flavours': ['boot', 'minimal', 'dvd'],
    },
    'alma10': {
        'name': 'AlmaLinux 10',
        'major': '10',
        'flavours': ['boot', 'minimal', 'dvd'],
    },
}

DEFAULT_MIRROR = 'https://repo.almalinux.org/almalinux'
DEFAULT_DNS_SERVERS = ['1.1.1.1', '8.8.8.8']
CONFIG_FILENAME = 'almalab.yaml'


def find_config_file(config_file: Optional[str] = None) -> str:
    """
    Find configuration file in standard locations.

    Search order:
    1. Explicit path (if provided)
    2. Current directory: ./almalab.yaml
    3. XDG config directory: ~/.config/almalab/almalab.yaml
    4. Home directory: ~/.almalab.yaml

    Args:
        config_file: Explicit path to config file, or None to search

    Returns:
        Path to found config file

    Raises:
        FileNotFoundError: If config file not found in any location
    """
    # If explicit path provided, use it directly
    if config_file:
        if os.path.isfile(config_file):
            return config_file
        raise FileNotFoundError(f"Configuration file '{config_file}' not found")

    # Search in order of preference
    search_paths = [
        Path.cwd() / CONFIG_FILENAME,
        Path.home() / ".config" / "almalab" / CONFIG_FILENAME,
        Path.home() / ".almalab.yaml",
    ]

    for path in search_paths:
        if path.is_file():
            return str(path)

    # Not found in any location
    raise FileNotFoundError(
        f"Configuration file '{CONFIG_FILENAME}' not found in any of the following locations:\n"
        + "".join(f"  - {path}\n" for path in search_paths)
        + f"\nCopy almalab.yaml.example to one of these locations and configure it."
    )


class LabConfig:
    """Load and parse lab configuration from a YAML file"""

    REQUIRED_SECTIONS = ('hyperv', 'defaults')

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize LabConfig.

        Args:
            config_file: Path to config file, or None to search in standard locations
        """
        self.config_file = find_config_file(config_file)

        try:
            with open(self.config_file, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise LabConfigError(f"Invalid YAML in {self.config_file}: {e}") from e

        if not isinstance(data, dict):
            raise LabConfigError(f"Configuration file '{self.config_file}' must contain a mapping")

        self.config = data
        self._validate_config()

    def _validate_config(self):
        """Validate required configuration sections exist"""
        for section in self.REQUIRED_SECTIONS:
            if not isinstance(self.config.get(section), dict):
                raise LabConfigError(f"Missing required section '{section}' in config file")

        for key in ('password', 'root_password'):
            value = self._get('defaults', key)
            if value and not str(value).startswith('$6$'):
                raise LabConfigError(
                    f"defaults.{key} must be an encrypted hash (SHA-512 format: $6$rounds=4096$salt$hash). "
                    "Generate one with: almalab generate password-hash"
                )

    def _get(self, section: str, key: str, fallback=None):
        """Read a value, treating missing sections, missing keys and empty strings alike"""
        values = self.config.get(section)
        if not isinstance(values, dict):
            return fallback
        value = values.get(key)
        if value is None or value == '':
            return fallback
        return value

    def _get_path(self, section: str, key: str, fallback: Optional[str] = None) -> Optional[str]:
        value = self._get(section, key, fallback)
        if value is None:
            return None
        return os.path.expanduser(str(value))

    # Hyper-V host settings

    def get_powershell(self) -> str:
        """Get the PowerShell executable (powershell.exe or pwsh)"""
        return str(self._get('hyperv', 'powershell', 'powershell.exe'))

    def get_vm_path(self) -> str:
        """Get directory holding per-VM configuration folders"""
        return self._get_path('hyperv', 'vm_path', r'C:\HyperV\VMs')

    def get_vhd_path(self) -> str:
        """Get directory holding VM virtual hard disks"""
        return self._get_path('hyperv', 'vhd_path', r'C:\HyperV\VHDs')

    def get_switch_name(self) -> str:
        return str(self._get('hyperv', 'switch_name', 'AlmaLab'))

    def get_switch_type(self) -> str:
        """Get switch type: Internal, External or Private"""
        switch_type = str(self._get('hyperv', 'switch_type', 'Internal')).capitalize()
        if switch_type not in ('Internal', 'External', 'Private'):
            raise LabConfigError(f"hyperv.switch_type must be Internal, External or Private, got {switch_type}")
        return switch_type

    def get_external_adapter(self) -> Optional[str]:
        """Get physical adapter name for External switches"""
        return self._get('hyperv', 'external_adapter')

    def get_nat_name(self) -> str:
        return str(self._get('hyperv', 'nat_name', 'AlmaLabNAT'))

    def get_nat_subnet(self) -> str:
        """Get NAT subnet in CIDR notation (e.g., '192.168.100.0/24')"""
        subnet = str(self._get('hyperv', 'nat_subnet', '192.168.100.0/24'))
        try:
            ipaddress.ip_network(subnet, strict=False)
        except ValueError as e:
            raise LabConfigError(f"Invalid hyperv.nat_subnet '{subnet}': {e}") from e
        return subnet

    def get_host_ip(self) -> str:
        """Get the host-side IP address on the lab switch (default: first address of the NAT subnet)"""
        host_ip = self._get('hyperv', 'host_ip')
        if host_ip:
            return str(host_ip)
        subnet = ipaddress.ip_network(self.get_nat_subnet(), strict=False)
        return str(subnet.network_address + 1)

    # ISO settings

    def get_iso_dir(self) -> str:
        return self._get_path('iso', 'directory', r'C:\HyperV\ISOs')

    def get_release(self) -> str:
        """Get default AlmaLinux release key (alma8, alma9, alma10)"""
        release = str(self._get('iso', 'release', 'alma9'))
        if not release.startswith('alma'):
            release = f"alma{release}"
        if not validate_release(release):
            supported = ', '.join(sorted(ALMA_RELEASES.keys()))
            raise LabConfigError(f"Unsupported iso.release '{release}'. Supported: {supported}")
        return release

    def get_iso_flavour(self) -> str:
        """Get ISO flavour: boot, minimal or dvd"""
        return str(self._get('iso', 'flavour', 'minimal')).lower()

    def get_mirror(self) -> str:
        return str(self._get('iso', 'mirror', DEFAULT_MIRROR)).rstrip('/')

    def get_verify_ssl(self) -> bool:
        """Get SSL verification setting for downloads (defaults to True for security)"""
        return bool(self._get('iso', 'verify_ssl', True))

    # VM defaults

    def get_default_generation(self) -> int:
        generation = int(self._get('defaults', 'generation', 2))
        if generation not in (1, 2):
            raise LabConfigError(f"defaults.generation must be 1 or 2, got {generation}")
        return generation

    def get_default_cores(self) -> int:
        """Get default CPU cores"""
        return int(self._get('defaults', 'cores', 2))

    def get_default_memory(self) -> int:
        """Get default memory in MB"""
        return int(self._get('defaults', 'memory', 4096))

    def get_default_disk_size(self) -> int:
        """Get default disk size in GB"""
        return int(self._get('defaults', 'disk_size', 40))

    def get_nested_virtualization(self) -> bool:
        return bool(self._get('defaults', 'nested', True))

    def get_secure_boot(self) -> bool:
        return bool(self._get('defaults', 'secure_boot', True))

    def get_provisioning(self) -> str:
        """Get provisioning method: 'kickstart' or 'cloud-init'"""
        method = str(self._get('defaults', 'provisioning', 'kickstart')).lower()
        if method not in ('kickstart', 'cloud-init'):
            raise LabConfigError(f"defaults.provisioning must be 'kickstart' or 'cloud-init', got {method}")
        return method

    def get_default_username(self) -> str:
        return str(self._get('defaults', 'username', 'labuser'))

    def get_default_password(self) -> Optional[str]:
        """Get default encrypted password hash for the lab user"""
        return self._get('defaults', 'password')

    def get_root_password(self) -> Optional[str]:
        """Get encrypted root password hash"""
        return self._get('defaults', 'root_password')

    def get_default_ssh_key_file(self) -> Optional[str]:
        return self._get_path('defaults', 'ssh_key_file')

    def get_timezone(self) -> str:
        return str(self._get('defaults', 'timezone', 'UTC'))

    def get_template_vhdx(self) -> Optional[str]:
        """Get template VHDX used as parent disk for cloud-init VMs"""
        return self._get_path('defaults', 'template_vhdx')

    # Network settings

    def get_network_ipaddress(self) -> str:
        """Get IP address assignment method: 'dhcp' or a specific IP address with CIDR"""
        value = str(self._get('network', 'ipaddress', 'dhcp')).strip()
        return value.lower() if value.lower() == 'dhcp' else value

    def get_network_gateway(self) -> Optional[str]:
        """Get gateway (defaults to the host IP on the lab switch)"""
        gateway = self._get('network', 'gateway')
        return str(gateway) if gateway else self.get_host_ip()

    def get_network_domain(self) -> Optional[str]:
        """Get DNS domain name from network section"""
        return self._get('network', 'domain')

    def get_network_dns_servers(self) -> List[str]:
        """Get DNS servers as list (list or space-separated string in config)"""
        dns_servers = self._get('network', 'dns_servers')
        if not dns_servers:
            # Default: Cloudflare and Google DNS
            return list(DEFAULT_DNS_SERVERS)
        if isinstance(dns_servers, str):
            return [s.strip() for s in dns_servers.split() if s.strip()]
        return [str(s) for s in dns_servers]

    # Packer settings

    def get_packer_binary(self) -> str:
        return str(self._get('packer', 'binary', 'packer'))

    def get_packer_build_dir(self) -> str:
        return self._get_path('packer', 'build_dir', 'packer-build')

    def get_packer_output_dir(self) -> str:
        return self._get_path('packer', 'output_dir', 'output-almalinux')

    def get_packer_headless(self) -> bool:
        return bool(self._get('packer', 'headless', True))

    def get_packer_http_ports(self) -> tuple:
        """Get the port range Packer's HTTP server may bind (min, max)"""
        return (int(self._get('packer', 'http_port_min', 8000)),
                int(self._get('packer', 'http_port_max', 9000)))

    def get_packer_ssh_password(self) -> str:
        """Get the plaintext SSH password Packer uses during the build"""
        return str(self._get('packer', 'ssh_password', 'packer'))

    # Post-install settings

    def get_postinstall(self) -> Dict:
        """Get post-install options (packages, firewall ports, docker, ...)"""
        values = self.config.get('postinstall')
        return dict(values) if isinstance(values, dict) else {}


def load_config_or_exit(config_file: Optional[str] = None) -> LabConfig:
    """Load configuration for a CLI command, exiting with status 1 on failure"""
    try:
        return LabConfig(config_file)
    except FileNotFoundError as e:
        logger.error(str(e))
        sys.exit(1)
    except LabConfigError as e:
        logger.error(f"Failed to load configuration: {e}")
        sys.exit(1)


def encrypt_password(plain_password: str) -> str:
    """
    Encrypt a plaintext password using SHA-512 (same format as mkpasswd)

    Uses passlib for cross-platform compatibility (works on macOS, Linux, Windows)

    Args:
        plain_password: Plaintext password to encrypt

    Returns:
        Encrypted password hash in format: $6$rounds=4096$salt$hash

    Raises:
        ImportError: If passlib is not installed
    """
    try:
        from passlib.context import CryptContext
    except ImportError:
        raise ImportError(
            "passlib is required for password encryption. "
            "Install it with: pip install passlib"
        )

    # Create a crypt context for SHA-512 with 4096 rounds (same as mkpasswd default)
    crypt_context = CryptContext(schemes=['sha512_crypt'], sha512_crypt__rounds=4096)
    return crypt_context.hash(plain_password)


def generate_cloud_init_config(
    username: str,
    hostname: Optional[str] = None,
    ssh_keys: Optional[List[str]] = None,
    password: Optional[str] = None,
    domain: Optional[str] = None,
    timezone: str = 'UTC',
    packages: Optional[List[str]] = None,
    postinstall_script: Optional[str] = None
) -> str:
    """
    Generate cloud-init user-data configuration

    Args:
        username: Primary user to create
        hostname: Hostname for the VM
        ssh_keys: List of SSH public keys
        password: Encrypted password hash for the user (must be in format $6$...)
        domain: DNS domain, used to build the FQDN
        timezone: Timezone name
        packages: Additional packages to install
        postinstall_script: Bash script written to the guest and executed once

    Returns:
        cloud-init YAML configuration as string
    """
    config = {
        'users': [],
        'timezone': timezone,
        'package_update': True,
        'packages': ['hyperv-daemons']  # Hyper-V KVP/VSS/FCOPY integration services
    }

    if hostname:
        config['hostname'] = hostname
        if domain:
            config['fqdn'] = f"{hostname}.{domain}"
        config['preserve_hostname'] = False

    # Primary user
    primary_user = {
        'name': username,
        'sudo': 'ALL=(ALL) NOPASSWD:ALL',
        'shell': '/bin/bash',
        'groups': ['wheel']
    }

    if ssh_keys:
        primary_user['ssh_authorized_keys'] = ssh_keys

    if password:
        # Password should already be encrypted (SHA-512 format: $6$rounds=4096$salt$hash)
        primary_user['passwd'] = password
        primary_user['lock_passwd'] = False
    else:
        primary_user['lock_passwd'] = True

    config['users'].append(primary_user)
    config['ssh_pwauth'] = bool(password)

    if packages:
        for package in packages:
            if package not in config['packages']:
                config['packages'].append(package)

    config['runcmd'] = [
        'systemctl enable --now hypervkvpd',
        'systemctl enable --now hypervvssd',
    ]

    if postinstall_script:
        config['write_files'] = [{
            'path': '/opt/lab/postinstall.sh',
            'permissions': '0755',
            'owner': 'root:root',
            'content': postinstall_script
        }]
        config['runcmd'].append('/opt/lab/postinstall.sh')

    return "#cloud-config\n" + yaml.dump(config, default_flow_style=False, sort_keys=False)


def generate_network_config(
    ip_address: Optional[str] = None,
    gateway: Optional[str] = None,
    dns_servers: Optional[List[str]] = None,
    domain: Optional[str] = None,
    interface: str = 'eth0'
) -> str:
    """
    Generate cloud-init network-config file

    Args:
        ip_address: IP address with CIDR notation (e.g., '192.168.100.10/24'), None for DHCP
        gateway: Gateway IP address (if None, will try to derive from IP subnet)
        dns_servers: List of DNS server IP addresses
        domain: DNS search domain
        interface: Network interface name (Hyper-V synthetic NICs show up as eth0)

    Returns:
        network-config YAML as string
    """
    ethernet = {'dhcp4': not ip_address}

    if ip_address:
        ethernet['addresses'] = [ip_address]

        # Derive gateway if not provided (assume .1 in subnet)
        if not gateway:
            ip_net = ipaddress.ip_network(ip_address, strict=False)
            gateway = str(ip_net.network_address + 1)

        ethernet['routes'] = [{'to': 'default', 'via': gateway}]

    if dns_servers:
        ethernet['nameservers'] = {'addresses': dns_servers}
        if domain:
            ethernet['nameservers']['search'] = [domain]

    network_config = {
        'version': 2,
        'ethernets': {interface: ethernet}
    }

    return yaml.dump(network_config, default_flow_style=False, sort_keys=False)


def generate_meta_data(instance_id: str, hostname: str) -> str:
    """Generate cloud-init NoCloud meta-data"""
    return f"instance-id: {instance_id}\nlocal-hostname: {hostname}\n"


def validate_release(release: str) -> bool:
    """Validate release name is supported"""
    return release in ALMA_RELEASES


def validate_vm_name(name: str) -> bool:
    """VM names double as hostnames and file names: letters, digits and dashes only"""
    if not name or len(name) > 63:
        return False
    if name.startswith('-') or name.endswith('-'):
        return False
    return all(c.isalnum() or c == '-' for c in name)


def read_ssh_key(key_file: str) -> str:
    """
    Read SSH public key from file

    Args:
        key_file: Path to SSH public key file (supports ~ expansion)

    Returns:
        SSH public key content

    Raises:
        FileNotFoundError if key file doesn't exist
        ValueError if key file is empty
    """
    key_file = os.path.expanduser(key_file)

    if not os.path.exists(key_file):
        raise FileNotFoundError(f"SSH key file not found: {key_file}")

    with open(key_file, 'r') as f:
        key = f.read().strip()

    if not key:
        raise ValueError(f"SSH key file is empty: {key_file}")

    return key


def setup_logging(level: str = 'INFO', log_file: Optional[str] = None):
    """
    Configure logging for the application

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file. If None, logs to stdout/stderr only
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    # Remove existing handlers
    logger.handlers.clear()

    # Console handlers: messages below ERROR to stdout, errors to stderr
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.addFilter(lambda record: record.levelno < logging.ERROR)
    console_handler.setFormatter(logging.Formatter('%(message)s'))
    logger.addHandler(console_handler)

    error_handler = logging.StreamHandler(sys.stderr)
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(logging.Formatter('Error: %(message)s'))
    logger.addHandler(error_handler)

    # File handler if specified
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        logger.addHandler(file_handler)

    logger.setLevel(log_level)
