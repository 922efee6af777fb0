#!/usr/bin/env python3
"""
Lab VM Creation

Create AlmaLinux VMs on Hyper-V, either installed by kickstart from the
installation ISO or cloned (differencing disk) from a Packer-built
template and configured by cloud-init.
"""

import os
import uuid
from typing import Dict, List, Optional

from almalab.lab_utils import (
    LabConfig,
    logger,
    read_ssh_key,
    validate_vm_name,
    HyperVError,
    SeedISOError,
    VMCreationError,
)
from almalab import hyperv
from almalab.iso_download import find_local_iso
from almalab.kickstart import generate_kickstart
from almalab.postinstall import render_postinstall_script, postinstall_options
from almalab.seed_iso import create_cloud_init_iso, create_kickstart_iso

# An unattended install takes much longer to report an address than a clone
KICKSTART_IP_WAIT = 1800
CLOUD_INIT_IP_WAIT = 300


def vm_dir(config: LabConfig, name: str) -> str:
    """Per-VM directory (Hyper-V configuration files and seed ISOs)"""
    return os.path.join(config.get_vm_path(), name)


def vm_vhd_path(config: LabConfig, name: str) -> str:
    return os.path.join(config.get_vhd_path(), f"{name}.vhdx")


def seed_iso_path(config: LabConfig, name: str, provisioning: str) -> str:
    suffix = 'oemdrv' if provisioning == 'kickstart' else 'cidata'
    return os.path.join(vm_dir(config, name), f"{name}-{suffix}.iso")


def _static_ip(config: LabConfig, ip_address: Optional[str]) -> Optional[str]:
    """Resolve the VM's static address (None means DHCP)"""
    value = ip_address or config.get_network_ipaddress()
    if not value or value == 'dhcp':
        return None
    if '/' not in value:
        raise ValueError(f"IP address must be in CIDR notation (e.g., 192.168.100.10/24), got {value}")
    return value


def cleanup_partial_vm(powershell: str, name: str, vm_created: bool,
                       vhd_file: Optional[str], seed_file: Optional[str]):
    """Remove whatever a failed creation left behind"""
    logger.info(f"→ Cleaning up partially created VM '{name}'...")
    if vm_created:
        try:
            vm = hyperv.get_vm(powershell, name)
            if vm and vm['state'] != 'off':
                hyperv.stop_vm(powershell, name, turn_off=True)
            if vm:
                hyperv.remove_vm(powershell, name)
                logger.info(f"✓ VM '{name}' removed")
        except HyperVError as e:
            logger.error(f"Failed to remove VM '{name}': {e}")

    if vhd_file:
        try:
            if hyperv.remove_file(powershell, vhd_file):
                logger.info(f"✓ Disk removed: {vhd_file}")
        except HyperVError as e:
            logger.error(f"Failed to remove disk {vhd_file}: {e}")

    if seed_file and os.path.exists(seed_file):
        try:
            os.remove(seed_file)
            logger.info(f"✓ Seed ISO removed: {seed_file}")
        except OSError as e:
            logger.error(f"Failed to remove seed ISO {seed_file}: {e}")


def create_lab_vm(
    config: LabConfig,
    name: str,
    generation: Optional[int] = None,
    cores: Optional[int] = None,
    memory: Optional[int] = None,
    disk_size: Optional[int] = None,
    provisioning: Optional[str] = None,
    release: Optional[str] = None,
    flavour: Optional[str] = None,
    iso_path: Optional[str] = None,
    template_vhdx: Optional[str] = None,
    username: Optional[str] = None,
    ssh_keys: Optional[List[str]] = None,
    password: Optional[str] = None,
    ip_address: Optional[str] = None,
    postinstall: bool = True,
    start: bool = True,
    wait_for_ip: bool = True,
    powershell: Optional[str] = None
) -> Dict:
    """
    Create a lab VM

    Args:
        config: LabConfig instance
        name: VM name (also the guest hostname)
        generation: 1 (BIOS) or 2 (UEFI), default from config
        cores: Number of virtual processors
        memory: Memory in MB
        disk_size: Disk size in GB
        provisioning: 'kickstart' or 'cloud-init'
        release: AlmaLinux release key for the installation ISO (kickstart)
        flavour: ISO flavour (kickstart)
        iso_path: Explicit installation ISO (kickstart)
        template_vhdx: Parent disk (cloud-init)
        username: Lab user to create
        ssh_keys: SSH public keys for the lab user
        password: Encrypted password hash for the lab user
        ip_address: Static address in CIDR notation ('dhcp' or None for the config default)
        postinstall: Run the lab post-install script in the guest
        start: Start the VM after creation
        wait_for_ip: Wait until the guest reports an IP address
        powershell: PowerShell executable (default from config)

    Returns:
        Dict with 'name', 'generation', 'provisioning', 'vhd', 'seed_iso',
        'install_iso', 'ip_address' and 'started' (False when Start-VM failed
        or start was not requested)

    Raises:
        ValueError for invalid arguments
        VMCreationError if the VM cannot be created (partial resources are removed)
    """
    if not validate_vm_name(name):
        raise ValueError(f"Invalid VM name '{name}': use letters, digits and dashes (max 63 characters)")

    powershell = powershell or config.get_powershell()
    generation = generation or config.get_default_generation()
    if generation not in (1, 2):
        raise ValueError(f"Generation must be 1 or 2, got {generation}")
    cores = cores or config.get_default_cores()
    memory = memory or config.get_default_memory()
    disk_size = disk_size or config.get_default_disk_size()
    provisioning = provisioning or config.get_provisioning()
    if provisioning not in ('kickstart', 'cloud-init'):
        raise ValueError(f"Provisioning must be 'kickstart' or 'cloud-init', got {provisioning}")
    username = username or config.get_default_username()
    password = password or config.get_default_password()
    static_ip = _static_ip(config, ip_address)
    nested = config.get_nested_virtualization()

    if ssh_keys is None:
        key_file = config.get_default_ssh_key_file()
        ssh_keys = [read_ssh_key(key_file)] if key_file else []

    # Refuse to touch an existing VM or disk
    if hyperv.get_vm(powershell, name):
        raise VMCreationError(f"VM '{name}' already exists. Delete it first with: almalab vm delete {name}")

    switch_name = config.get_switch_name()
    if not hyperv.get_switch(powershell, switch_name):
        raise VMCreationError(f"Switch '{switch_name}' not found. Create it with: almalab network setup")

    vhd_file = vm_vhd_path(config, name)
    if hyperv.test_path(powershell, vhd_file):
        raise VMCreationError(f"Disk {vhd_file} already exists and is not attached to VM '{name}'. Remove it first")

    postinstall_script = None
    if postinstall:
        postinstall_script = render_postinstall_script(
            username=username,
            timezone=config.get_timezone(),
            **postinstall_options(config.get_postinstall())
        )

    install_iso = None
    parent_vhdx = None
    if provisioning == 'kickstart':
        release = release or config.get_release()
        flavour = flavour or config.get_iso_flavour()
        install_iso = iso_path or find_local_iso(config.get_iso_dir(), release, flavour)
        if not install_iso:
            raise VMCreationError(
                f"No {release} {flavour} ISO in {config.get_iso_dir()}. "
                f"Download it with: almalab iso download --release {release} --flavour {flavour}"
            )
        root_password = config.get_root_password()
        if not root_password:
            raise VMCreationError("defaults.root_password must be set for kickstart installs")
    else:
        parent_vhdx = template_vhdx or config.get_template_vhdx()
        if not parent_vhdx:
            raise VMCreationError(
                "No template VHDX configured (defaults.template_vhdx). Build one with: almalab packer build"
            )
        if not hyperv.test_path(powershell, parent_vhdx):
            raise VMCreationError(f"Template VHDX not found: {parent_vhdx}")

    logger.info(f"→ Creating VM '{name}' (Generation {generation}, {provisioning}, "
                f"{cores} cores, {memory} MB, {disk_size} GB)")

    seed_file = seed_iso_path(config, name, provisioning)
    vm_created = False
    vhd_created = False
    seed_created = False

    try:
        os.makedirs(vm_dir(config, name), exist_ok=True)

        if provisioning == 'kickstart':
            ks_text = generate_kickstart(
                hostname=name,
                root_password=root_password,
                username=username,
                user_password=password,
                ssh_keys=ssh_keys,
                ip_address=static_ip,
                gateway=config.get_network_gateway() if static_ip else None,
                dns_servers=config.get_network_dns_servers(),
                domain=config.get_network_domain(),
                timezone=config.get_timezone(),
                postinstall_script=postinstall_script
            )
            create_kickstart_iso(ks_text, seed_file)
        else:
            create_cloud_init_iso(
                seed_file,
                hostname=name,
                username=username,
                ssh_keys=ssh_keys,
                password=password,
                ip_address=static_ip,
                gateway=config.get_network_gateway() if static_ip else None,
                dns_servers=config.get_network_dns_servers(),
                domain=config.get_network_domain(),
                timezone=config.get_timezone(),
                postinstall_script=postinstall_script,
                instance_id=f"{name}-{uuid.uuid4().hex[:8]}"
            )
        seed_created = True

        hyperv.ensure_directory(powershell, config.get_vhd_path())
        hyperv.create_vhd(powershell, vhd_file, size_gb=disk_size, parent_path=parent_vhdx)
        vhd_created = True

        vm_created = True
        hyperv.create_vm(
            powershell,
            name=name,
            generation=generation,
            cores=cores,
            memory=memory,
            vm_path=config.get_vm_path(),
            vhd_file=vhd_file,
            switch_name=switch_name,
            install_iso=install_iso,
            seed_iso=seed_file,
            nested=nested,
            secure_boot=config.get_secure_boot()
        )
    except (HyperVError, SeedISOError, OSError) as e:
        logger.error(f"VM creation failed: {e}")
        cleanup_partial_vm(
            powershell,
            name,
            vm_created=vm_created,
            vhd_file=vhd_file if vhd_created else None,
            seed_file=seed_file if seed_created else None
        )
        raise VMCreationError(f"Failed to create VM '{name}': {e}") from e

    logger.info(f"✓ VM '{name}' created")

    result = {
        'name': name,
        'generation': generation,
        'provisioning': provisioning,
        'vhd': vhd_file,
        'seed_iso': seed_file,
        'install_iso': install_iso,
        'ip_address': static_ip.split('/')[0] if static_ip else None,
        'started': False,
    }

    if not start:
        return result

    # A VM that was created but does not boot is kept for 'almalab diagnose'
    logger.info("→ Starting VM...")
    try:
        hyperv.start_vm(powershell, name)
    except HyperVError as e:
        logger.error(f"VM start failed: {e}")
        return result
    result['started'] = True
    if hyperv.wait_for_vm_state(powershell, name, 'running', max_wait=120):
        logger.info("✓ VM started")

    if wait_for_ip:
        max_wait = KICKSTART_IP_WAIT if provisioning == 'kickstart' else CLOUD_INIT_IP_WAIT
        reported = hyperv.wait_for_vm_ip(powershell, name, max_wait=max_wait)
        if reported:
            logger.info(f"✓ VM reports IP address {reported}")
            result['ip_address'] = reported
        else:
            logger.warning(f"→ No IP address reported after {max_wait}s. "
                           f"Check the console or run: almalab diagnose {name}")

    return result
