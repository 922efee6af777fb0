#!/usr/bin/env python3
"""
Hyper-V Operations

Query and manage Hyper-V VMs, virtual switches, NAT and host firewall
rules through PowerShell cmdlets.
"""

import ipaddress
import time
from typing import Dict, List, Optional

from almalab.lab_utils import LabConfig, logger, HyperVError
from almalab.powershell import (
    DEFAULT_POWERSHELL,
    ps_quote,
    ps_bool,
    ps_array,
    run_powershell,
    run_powershell_list,
    run_with_retry,
)

FIREWALL_GROUP = 'AlmaLab'
SECURE_BOOT_TEMPLATE = 'MicrosoftUEFICertificateAuthority'

# Gen1 boot order when installing from DVD vs. booting an installed disk
BIOS_ORDER_CD_FIRST = ['CD', 'IDE', 'LegacyNetworkAdapter', 'Floppy']
BIOS_ORDER_DISK_FIRST = ['IDE', 'CD', 'LegacyNetworkAdapter', 'Floppy']

VM_FIELDS = (
    "Name, @{Name='State';Expression={$_.State.ToString()}}, Generation, ProcessorCount, "
    "@{Name='MemoryStartupMB';Expression={[int64]($_.MemoryStartup / 1MB)}}, Path, "
    "@{Name='Uptime';Expression={$_.Uptime.ToString()}}"
)


def connect_hyperv(config: LabConfig) -> str:
    """
    Verify that the Hyper-V PowerShell module is usable

    Args:
        config: LabConfig instance

    Returns:
        PowerShell executable to pass to the other functions in this module

    Raises:
        HyperVError if PowerShell or the Hyper-V module is unavailable
    """
    powershell = config.get_powershell()
    try:
        run_powershell("Get-Command -Module Hyper-V -Name Get-VM | Out-Null", powershell=powershell)
    except HyperVError as e:
        raise HyperVError(
            f"Hyper-V PowerShell module is not available: {e}. "
            "Enable it with: Enable-WindowsOptionalFeature -Online -FeatureName Microsoft-Hyper-V-All",
            command=e.command, returncode=e.returncode, stderr=e.stderr
        ) from e
    return powershell


def _vm_info(raw: Dict) -> Dict:
    """Normalize Get-VM output to a VM info dict"""
    return {
        'name': raw.get('Name', ''),
        'state': str(raw.get('State', 'unknown')).lower(),
        'generation': raw.get('Generation'),
        'cores': raw.get('ProcessorCount'),
        'memory': raw.get('MemoryStartupMB'),
        'path': raw.get('Path', ''),
        'uptime': raw.get('Uptime', ''),
    }


def get_vm(powershell: str, name: str) -> Optional[Dict]:
    """
    Find VM by name

    Returns:
        VM info dict with 'name', 'state', 'generation', 'cores', 'memory', 'path'
        or None if not found
    """
    vms = run_powershell_list(
        f"Get-VM -Name {ps_quote(name)} -ErrorAction SilentlyContinue | Select-Object {VM_FIELDS}",
        powershell=powershell
    )
    return _vm_info(vms[0]) if vms else None


def list_vms(powershell: str) -> List[Dict]:
    """List all VMs on the host"""
    vms = run_powershell_list(f"Get-VM | Select-Object {VM_FIELDS}", powershell=powershell)
    return [_vm_info(vm) for vm in vms]


def get_vm_disks(powershell: str, name: str) -> List[Dict]:
    """Get hard disk drives attached to a VM"""
    disks = run_powershell_list(
        f"Get-VMHardDiskDrive -VMName {ps_quote(name)} | "
        "Select-Object Path, @{Name='ControllerType';Expression={$_.ControllerType.ToString()}}, "
        "ControllerNumber, ControllerLocation",
        powershell=powershell
    )
    return [{
        'path': d.get('Path') or '',
        'controller_type': d.get('ControllerType', ''),
        'controller_number': d.get('ControllerNumber'),
        'controller_location': d.get('ControllerLocation'),
    } for d in disks]


def get_vm_dvd_drives(powershell: str, name: str) -> List[Dict]:
    """Get DVD drives attached to a VM (path is empty when no media is inserted)"""
    drives = run_powershell_list(
        f"Get-VMDvdDrive -VMName {ps_quote(name)} | "
        "Select-Object Path, @{Name='ControllerType';Expression={$_.ControllerType.ToString()}}, "
        "ControllerNumber, ControllerLocation",
        powershell=powershell
    )
    return [{
        'path': d.get('Path') or '',
        'controller_type': d.get('ControllerType', ''),
        'controller_number': d.get('ControllerNumber'),
        'controller_location': d.get('ControllerLocation'),
    } for d in drives]


def get_vm_firmware(powershell: str, name: str) -> Optional[Dict]:
    """
    Get Gen2 firmware settings (Secure Boot and first boot device)

    Returns:
        Dict with 'secure_boot', 'secure_boot_template', 'boot_order', or None for Gen1 VMs
    """
    result = run_powershell(
        f"Get-VMFirmware -VMName {ps_quote(name)} -ErrorAction SilentlyContinue | Select-Object "
        "@{Name='SecureBoot';Expression={$_.SecureBoot.ToString()}}, SecureBootTemplate, "
        "@{Name='BootOrder';Expression={@($_.BootOrder | ForEach-Object { $_.BootType.ToString() + ':' + "
        "$(if ($_.Device.Path) { $_.Device.Path } else { '' }) })}}",
        json_output=True,
        powershell=powershell
    )
    if not result:
        return None
    if isinstance(result, list):
        result = result[0]
    boot_order = result.get('BootOrder') or []
    if isinstance(boot_order, str):
        boot_order = [boot_order]
    return {
        'secure_boot': str(result.get('SecureBoot', '')).lower() == 'on',
        'secure_boot_template': result.get('SecureBootTemplate') or '',
        'boot_order': boot_order,
    }


def get_vm_bios(powershell: str, name: str) -> Optional[List[str]]:
    """Get Gen1 BIOS startup order, or None for Gen2 VMs"""
    result = run_powershell(
        f"Get-VMBios -VMName {ps_quote(name)} -ErrorAction SilentlyContinue | Select-Object "
        "@{Name='StartupOrder';Expression={@($_.StartupOrder | ForEach-Object { $_.ToString() })}}",
        json_output=True,
        powershell=powershell
    )
    if not result:
        return None
    if isinstance(result, list):
        result = result[0]
    order = result.get('StartupOrder') or []
    return [order] if isinstance(order, str) else list(order)


def get_vm_processor(powershell: str, name: str) -> Dict:
    result = run_powershell(
        f"Get-VMProcessor -VMName {ps_quote(name)} | Select-Object Count, ExposeVirtualizationExtensions",
        json_output=True,
        powershell=powershell
    ) or {}
    return {
        'count': result.get('Count'),
        'nested': bool(result.get('ExposeVirtualizationExtensions')),
    }


def get_vm_memory(powershell: str, name: str) -> Dict:
    result = run_powershell(
        f"Get-VMMemory -VMName {ps_quote(name)} | Select-Object DynamicMemoryEnabled, "
        "@{Name='StartupMB';Expression={[int64]($_.Startup / 1MB)}}",
        json_output=True,
        powershell=powershell
    ) or {}
    return {
        'dynamic': bool(result.get('DynamicMemoryEnabled')),
        'startup': result.get('StartupMB'),
    }


def get_vm_network_adapters(powershell: str, name: str) -> List[Dict]:
    adapters = run_powershell_list(
        f"Get-VMNetworkAdapter -VMName {ps_quote(name)} | Select-Object Name, SwitchName, MacAddress, "
        "@{Name='MacAddressSpoofing';Expression={$_.MacAddressSpoofing.ToString()}}, IPAddresses",
        powershell=powershell
    )
    result = []
    for adapter in adapters:
        addresses = adapter.get('IPAddresses') or []
        if isinstance(addresses, str):
            addresses = [addresses]
        result.append({
            'name': adapter.get('Name', ''),
            'switch': adapter.get('SwitchName') or '',
            'mac': adapter.get('MacAddress', ''),
            'mac_spoofing': str(adapter.get('MacAddressSpoofing', '')).lower() == 'on',
            'ip_addresses': list(addresses),
        })
    return result


def get_vm_ip_addresses(powershell: str, name: str) -> List[str]:
    """
    Get IPv4 addresses reported by the guest

    Requires hyperv-daemons (KVP) running inside the guest.
    """
    addresses = []
    for adapter in get_vm_network_adapters(powershell, name):
        for address in adapter['ip_addresses']:
            try:
                if ipaddress.ip_address(address).version == 4:
                    addresses.append(address)
            except ValueError:
                continue
    return addresses


def test_path(powershell: str, path: str) -> bool:
    """Check whether a file exists on the Hyper-V host"""
    output = run_powershell(f"Test-Path -LiteralPath {ps_quote(path)}", powershell=powershell)
    return output.strip().lower() == 'true'


def remove_file(powershell: str, path: str) -> bool:
    """
    Delete a file on the Hyper-V host

    Returns:
        True if the file was deleted, False if it did not exist
    """
    if not test_path(powershell, path):
        return False
    run_with_retry(f"Remove-Item -LiteralPath {ps_quote(path)} -Force", powershell=powershell)
    return True


def ensure_directory(powershell: str, path: str):
    run_powershell(
        f"New-Item -ItemType Directory -Force -Path {ps_quote(path)} | Out-Null",
        powershell=powershell
    )


# Switch, NAT and firewall management

def get_switch(powershell: str, name: str) -> Optional[Dict]:
    """Find a virtual switch by name"""
    switches = run_powershell_list(
        f"Get-VMSwitch -Name {ps_quote(name)} -ErrorAction SilentlyContinue | Select-Object Name, "
        "@{Name='SwitchType';Expression={$_.SwitchType.ToString()}}, NetAdapterInterfaceDescription",
        powershell=powershell
    )
    if not switches:
        return None
    return {
        'name': switches[0].get('Name', ''),
        'type': switches[0].get('SwitchType', ''),
        'adapter': switches[0].get('NetAdapterInterfaceDescription') or '',
    }


def ensure_switch(powershell: str, name: str, switch_type: str = 'Internal',
                  adapter: Optional[str] = None) -> bool:
    """
    Create the lab virtual switch if it does not exist

    Args:
        powershell: PowerShell executable
        name: Switch name
        switch_type: Internal, External or Private
        adapter: Physical network adapter name (External switches only)

    Returns:
        True if the switch was created, False if it already existed
    """
    existing = get_switch(powershell, name)
    if existing:
        if existing['type'].lower() != switch_type.lower():
            logger.warning(f"→ Switch '{name}' exists with type {existing['type']} (configured: {switch_type})")
        else:
            logger.info(f"✓ Switch '{name}' already exists ({existing['type']})")
        return False

    if switch_type == 'External':
        if not adapter:
            raise HyperVError("External switches require hyperv.external_adapter in the config")
        script = (f"New-VMSwitch -Name {ps_quote(name)} -NetAdapterName {ps_quote(adapter)} "
                  "-AllowManagementOS $true | Out-Null")
    else:
        script = f"New-VMSwitch -Name {ps_quote(name)} -SwitchType {switch_type} | Out-Null"

    logger.info(f"→ Creating {switch_type} switch '{name}'...")
    run_powershell(script, powershell=powershell)
    logger.info(f"✓ Switch '{name}' created")
    return True


def ensure_nat(powershell: str, switch_name: str, nat_name: str, subnet: str, host_ip: str) -> bool:
    """
    Assign the host IP to the switch's host vNIC and create the NAT network

    Returns:
        True if anything was changed, False if already configured
    """
    network = ipaddress.ip_network(subnet, strict=False)
    interface_alias = f"vEthernet ({switch_name})"
    changed = False

    existing_ip = run_powershell_list(
        f"Get-NetIPAddress -InterfaceAlias {ps_quote(interface_alias)} -AddressFamily IPv4 "
        f"-ErrorAction SilentlyContinue | Where-Object {{ $_.IPAddress -eq {ps_quote(host_ip)} }} | "
        "Select-Object IPAddress, PrefixLength",
        powershell=powershell
    )
    if existing_ip:
        logger.info(f"✓ Host IP {host_ip} already assigned to {interface_alias}")
    else:
        logger.info(f"→ Assigning {host_ip}/{network.prefixlen} to {interface_alias}...")
        run_powershell(
            f"New-NetIPAddress -IPAddress {ps_quote(host_ip)} -PrefixLength {network.prefixlen} "
            f"-InterfaceAlias {ps_quote(interface_alias)} | Out-Null",
            powershell=powershell
        )
        changed = True

    existing_nat = run_powershell_list(
        f"Get-NetNat -Name {ps_quote(nat_name)} -ErrorAction SilentlyContinue | "
        "Select-Object Name, InternalIPInterfaceAddressPrefix",
        powershell=powershell
    )
    if existing_nat:
        prefix = existing_nat[0].get('InternalIPInterfaceAddressPrefix', '')
        if prefix != str(network):
            logger.warning(f"→ NAT '{nat_name}' exists with prefix {prefix} (configured: {network})")
        else:
            logger.info(f"✓ NAT '{nat_name}' already exists ({prefix})")
    else:
        logger.info(f"→ Creating NAT '{nat_name}' for {network}...")
        run_powershell(
            f"New-NetNat -Name {ps_quote(nat_name)} -InternalIPInterfaceAddressPrefix {ps_quote(str(network))} | Out-Null",
            powershell=powershell
        )
        changed = True

    return changed


def default_firewall_rules(subnet: str, http_ports: tuple = (8000, 9000)) -> List[Dict]:
    """
    Host firewall rules the lab needs

    ICMP echo from the lab subnet, and the Packer HTTP server port range so
    installers can fetch ks.cfg from the host.
    """
    return [
        {
            'name': 'AlmaLab-ICMPv4-In',
            'display_name': 'AlmaLab ICMPv4 Echo Request',
            'protocol': 'ICMPv4',
            'icmp_type': 8,
            'remote_address': subnet,
        },
        {
            'name': 'AlmaLab-Packer-HTTP-In',
            'display_name': 'AlmaLab Packer HTTP server',
            'protocol': 'TCP',
            'local_port': f"{http_ports[0]}-{http_ports[1]}",
            'remote_address': subnet,
        },
    ]


def ensure_firewall_rules(powershell: str, rules: List[Dict]) -> int:
    """
    Create inbound allow rules that do not exist yet

    Returns:
        Number of rules created
    """
    created = 0
    for rule in rules:
        existing = run_powershell_list(
            f"Get-NetFirewallRule -Name {ps_quote(rule['name'])} -ErrorAction SilentlyContinue | Select-Object Name",
            powershell=powershell
        )
        if existing:
            logger.info(f"✓ Firewall rule '{rule['name']}' already exists")
            continue

        script = (
            f"New-NetFirewallRule -Name {ps_quote(rule['name'])} "
            f"-DisplayName {ps_quote(rule.get('display_name', rule['name']))} "
            f"-Group {ps_quote(FIREWALL_GROUP)} -Direction Inbound -Action Allow "
            f"-Protocol {rule['protocol']}"
        )
        if rule.get('icmp_type') is not None:
            script += f" -IcmpType {rule['icmp_type']}"
        if rule.get('local_port'):
            script += f" -LocalPort {ps_quote(rule['local_port'])}"
        if rule.get('remote_address'):
            script += f" -RemoteAddress {ps_quote(rule['remote_address'])}"
        script += " | Out-Null"

        run_powershell(script, powershell=powershell)
        logger.info(f"✓ Firewall rule '{rule['name']}' created")
        created += 1
    return created


def remove_firewall_rules(powershell: str) -> bool:
    """Remove all firewall rules in the lab group"""
    try:
        run_powershell(
            f"Get-NetFirewallRule -Group {ps_quote(FIREWALL_GROUP)} -ErrorAction SilentlyContinue | Remove-NetFirewallRule",
            powershell=powershell
        )
        return True
    except HyperVError as e:
        logger.error(f"Failed to remove firewall rules: {e}")
        return False


def remove_nat(powershell: str, nat_name: str) -> bool:
    try:
        run_powershell(
            f"Get-NetNat -Name {ps_quote(nat_name)} -ErrorAction SilentlyContinue | Remove-NetNat -Confirm:$false",
            powershell=powershell
        )
        return True
    except HyperVError as e:
        logger.error(f"Failed to remove NAT '{nat_name}': {e}")
        return False


def remove_switch(powershell: str, name: str) -> bool:
    try:
        run_powershell(
            f"Get-VMSwitch -Name {ps_quote(name)} -ErrorAction SilentlyContinue | Remove-VMSwitch -Force",
            powershell=powershell
        )
        return True
    except HyperVError as e:
        logger.error(f"Failed to remove switch '{name}': {e}")
        return False


# VM lifecycle

def create_vhd(powershell: str, path: str, size_gb: Optional[int] = None,
               parent_path: Optional[str] = None):
    """
    Create a dynamic VHDX, or a differencing VHDX when parent_path is given
    """
    if parent_path:
        logger.info(f"→ Creating differencing disk {path} (parent: {parent_path})...")
        run_with_retry(
            f"New-VHD -Path {ps_quote(path)} -ParentPath {ps_quote(parent_path)} -Differencing | Out-Null",
            powershell=powershell
        )
        if size_gb:
            try:
                run_powershell(
                    f"$vhd = Get-VHD -Path {ps_quote(path)}; "
                    f"if ($vhd.Size -lt ([uint64]{size_gb} * 1GB)) "
                    f"{{ Resize-VHD -Path {ps_quote(path)} -SizeBytes ([uint64]{size_gb} * 1GB) }}",
                    powershell=powershell
                )
            except HyperVError as e:
                # Template size is kept, cloud-init growpart only fills what exists
                logger.warning(f"→ Could not resize differencing disk: {e}")
    else:
        logger.info(f"→ Creating {size_gb}GB dynamic disk {path}...")
        run_with_retry(
            f"New-VHD -Path {ps_quote(path)} -SizeBytes ([uint64]{size_gb} * 1GB) -Dynamic | Out-Null",
            powershell=powershell
        )


def create_vm(
    powershell: str,
    name: str,
    generation: int,
    cores: int,
    memory: int,
    vm_path: str,
    vhd_file: str,
    switch_name: str,
    install_iso: Optional[str] = None,
    seed_iso: Optional[str] = None,
    nested: bool = True,
    secure_boot: bool = True
):
    """
    Create and configure a VM with an existing VHDX attached

    Args:
        powershell: PowerShell executable
        name: VM name
        generation: 1 (BIOS) or 2 (UEFI)
        cores: Number of virtual processors
        memory: Startup memory in MB
        vm_path: Directory for VM configuration files
        vhd_file: Boot disk (must already exist)
        switch_name: Virtual switch to connect
        install_iso: Installation ISO, boots first when given
        seed_iso: Kickstart (OEMDRV) or cloud-init (cidata) seed ISO
        nested: Expose virtualization extensions (static memory, MAC spoofing)
        secure_boot: Gen2 only; uses the UEFI CA template so the Linux shim loads

    Raises:
        HyperVError on the first failing cmdlet
    """
    if generation not in (1, 2):
        raise ValueError(f"Generation must be 1 or 2, got {generation}")

    q_name = ps_quote(name)

    logger.info(f"→ Creating Generation {generation} VM '{name}'...")
    run_with_retry(
        f"New-VM -Name {q_name} -Generation {generation} -MemoryStartupBytes ([int64]{memory} * 1MB) "
        f"-SwitchName {ps_quote(switch_name)} -Path {ps_quote(vm_path)} -NoVHD | Out-Null",
        powershell=powershell
    )
    logger.info(f"✓ VM '{name}' created")

    run_powershell(
        f"Set-VM -Name {q_name} -AutomaticCheckpointsEnabled $false -AutomaticStopAction ShutDown",
        powershell=powershell
    )

    # Gen1 boots from IDE only; Gen2 has no IDE controller
    controller = 'IDE' if generation == 1 else 'SCSI'
    run_with_retry(
        f"Add-VMHardDiskDrive -VMName {q_name} -ControllerType {controller} -Path {ps_quote(vhd_file)}",
        powershell=powershell
    )
    logger.info(f"✓ Disk attached ({controller}): {vhd_file}")

    processor_args = f"-Count {cores}"
    if nested:
        processor_args += " -ExposeVirtualizationExtensions $true"
    run_powershell(f"Set-VMProcessor -VMName {q_name} {processor_args}", powershell=powershell)

    # Nested virtualization does not work with dynamic memory
    run_powershell(
        f"Set-VMMemory -VMName {q_name} -DynamicMemoryEnabled {ps_bool(not nested)}",
        powershell=powershell
    )
    if nested:
        run_powershell(
            f"Get-VMNetworkAdapter -VMName {q_name} | Set-VMNetworkAdapter -MacAddressSpoofing On",
            powershell=powershell
        )
        logger.info("✓ Nested virtualization enabled (static memory, MAC address spoofing)")

    if generation == 2:
        if secure_boot:
            run_powershell(
                f"Set-VMFirmware -VMName {q_name} -EnableSecureBoot On "
                f"-SecureBootTemplate {SECURE_BOOT_TEMPLATE}",
                powershell=powershell
            )
        else:
            run_powershell(f"Set-VMFirmware -VMName {q_name} -EnableSecureBoot Off", powershell=powershell)

    if install_iso:
        if generation == 1:
            # New-VM adds an empty DVD drive at IDE 1:0 for Gen1
            run_powershell(
                f"Set-VMDvdDrive -VMName {q_name} -ControllerNumber 1 -ControllerLocation 0 "
                f"-Path {ps_quote(install_iso)}",
                powershell=powershell
            )
        else:
            run_powershell(f"Add-VMDvdDrive -VMName {q_name} -Path {ps_quote(install_iso)}", powershell=powershell)
        logger.info(f"✓ Installation ISO attached: {install_iso}")

    if seed_iso:
        if generation == 1:
            run_powershell(
                f"Add-VMDvdDrive -VMName {q_name} -ControllerNumber 1 -ControllerLocation 1 "
                f"-Path {ps_quote(seed_iso)}",
                powershell=powershell
            )
        else:
            run_powershell(f"Add-VMDvdDrive -VMName {q_name} -Path {ps_quote(seed_iso)}", powershell=powershell)
        logger.info(f"✓ Seed ISO attached: {seed_iso}")

    set_boot_order(powershell, name, generation, boot_from_dvd=bool(install_iso), install_iso=install_iso)


def set_boot_order(powershell: str, name: str, generation: int, boot_from_dvd: bool,
                   install_iso: Optional[str] = None):
    """Make the installation DVD (or the boot disk) the first boot device"""
    q_name = ps_quote(name)
    if generation == 1:
        order = BIOS_ORDER_CD_FIRST if boot_from_dvd else BIOS_ORDER_DISK_FIRST
        run_powershell(f"Set-VMBios -VMName {q_name} -StartupOrder {ps_array(order)}", powershell=powershell)
    elif boot_from_dvd and install_iso:
        run_powershell(
            f"Set-VMFirmware -VMName {q_name} -FirstBootDevice "
            f"(Get-VMDvdDrive -VMName {q_name} | Where-Object {{ $_.Path -eq {ps_quote(install_iso)} }} | "
            "Select-Object -First 1)",
            powershell=powershell
        )
    else:
        run_powershell(
            f"Set-VMFirmware -VMName {q_name} -FirstBootDevice "
            f"(Get-VMHardDiskDrive -VMName {q_name} | Select-Object -First 1)",
            powershell=powershell
        )
    logger.info(f"✓ Boot order set ({'DVD' if boot_from_dvd else 'disk'} first)")


def start_vm(powershell: str, name: str):
    run_with_retry(f"Start-VM -Name {ps_quote(name)}", powershell=powershell)


def stop_vm(powershell: str, name: str, turn_off: bool = False):
    """Shut down a VM through integration services, or power it off with turn_off"""
    flag = '-TurnOff' if turn_off else '-Force'
    run_with_retry(f"Stop-VM -Name {ps_quote(name)} {flag}", powershell=powershell)


def remove_vm(powershell: str, name: str):
    run_with_retry(f"Remove-VM -Name {ps_quote(name)} -Force", powershell=powershell)


def wait_for_vm_state(powershell: str, name: str, state: str, max_wait: int = 120,
                      check_interval: int = 2) -> bool:
    """
    Wait for a VM to reach the given state ('running', 'off', ...)

    Returns:
        True if the state was reached, False on timeout
    """
    elapsed = 0
    while elapsed < max_wait:
        try:
            vm = get_vm(powershell, name)
            if vm and vm['state'] == state:
                return True
        except HyperVError as e:
            logger.debug(f"Could not query VM state: {e}")

        time.sleep(check_interval)
        elapsed += check_interval

        # Print progress every 10 seconds
        if elapsed % 10 == 0:
            logger.info(f"→ Still waiting for '{name}' to be {state}... ({elapsed}s elapsed)")

    logger.error(f"VM '{name}' did not reach state '{state}' within {max_wait} seconds")
    return False


def wait_for_vm_ip(powershell: str, name: str, max_wait: int = 300, check_interval: int = 5) -> Optional[str]:
    """
    Wait until the guest reports an IPv4 address through KVP

    Returns:
        First IPv4 address, or None on timeout
    """
    elapsed = 0
    logger.info(f"→ Waiting for '{name}' to report an IP address...")
    while elapsed < max_wait:
        try:
            addresses = get_vm_ip_addresses(powershell, name)
            if addresses:
                return addresses[0]
        except HyperVError as e:
            logger.debug(f"Could not query VM IP addresses: {e}")

        time.sleep(check_interval)
        elapsed += check_interval
        if elapsed % 30 == 0:
            logger.info(f"→ Still waiting for IP address... ({elapsed}s elapsed)")

    return None
