#!/usr/bin/env python3
"""
Lab VM Deletion

Delete lab VMs with a confirmation prompt, together with their disks and
seed ISOs.
"""

import os

from almalab.lab_utils import LabConfig, logger, validate_vm_name, HyperVError, VMDeletionError
from almalab import hyperv
from almalab.vm_create import vm_dir, seed_iso_path


def is_path_under(path: str, directory: str) -> bool:
    """Check that path is inside directory (case-insensitive on Windows)"""
    path = os.path.normcase(os.path.abspath(path))
    directory = os.path.normcase(os.path.abspath(directory))
    try:
        return os.path.commonpath([path, directory]) == directory
    except ValueError:
        # Different drives
        return False


def remove_empty_dirs(directory: str) -> bool:
    """
    Remove directory if it only contains empty directories

    Returns:
        True if the directory is gone
    """
    if not os.path.isdir(directory):
        return True
    for dirpath, _, _ in os.walk(directory, topdown=False):
        if not os.listdir(dirpath):
            os.rmdir(dirpath)
    return not os.path.exists(directory)


def delete_lab_vm(config: LabConfig, name: str, force: bool = False, powershell: str = None) -> bool:
    """
    Delete a VM with optional confirmation

    Disks are only deleted when they live under the configured VHD
    directory; template and other foreign disks are left alone.

    Args:
        config: LabConfig instance
        name: VM name
        force: Skip confirmation if True
        powershell: PowerShell executable (default from config)

    Returns:
        True if deleted, False if the user cancelled

    Raises:
        ValueError for names that are not plain VM names (Hyper-V treats * and ? as wildcards)
        VMDeletionError if the VM does not exist or cannot be removed
    """
    if not validate_vm_name(name):
        raise ValueError(f"Invalid VM name '{name}': use letters, digits and dashes (max 63 characters)")

    powershell = powershell or config.get_powershell()

    vm = hyperv.get_vm(powershell, name)
    if not vm:
        raise VMDeletionError(f"VM '{name}' not found")

    logger.info(f"→ VM '{name}' (Generation {vm['generation']}, state: {vm['state']})")

    if not force:
        # Prompt for confirmation
        response = input(f"Delete VM '{name}' and its disks? [y/N]: ").strip().lower()
        if response != 'y':
            logger.info(f"→ Skipping VM '{name}'")
            return False

    try:
        disks = hyperv.get_vm_disks(powershell, name)
        dvd_drives = hyperv.get_vm_dvd_drives(powershell, name)

        # Stop VM if it's running
        if vm['state'] != 'off':
            logger.info(f"→ Stopping VM '{name}'...")
            hyperv.stop_vm(powershell, name, turn_off=True)
            if not hyperv.wait_for_vm_state(powershell, name, 'off', max_wait=60):
                logger.error(f"VM '{name}' did not stop within timeout, attempting to delete anyway...")

        logger.info(f"→ Deleting VM '{name}'...")
        hyperv.remove_vm(powershell, name)
        logger.info(f"✓ VM '{name}' deleted successfully")
    except HyperVError as e:
        raise VMDeletionError(f"Failed to delete VM '{name}': {e}") from e

    vhd_dir = config.get_vhd_path()
    for disk in disks:
        path = disk['path']
        if not path:
            continue
        if not is_path_under(path, vhd_dir):
            logger.info(f"→ Keeping disk outside {vhd_dir}: {path}")
            continue
        try:
            if hyperv.remove_file(powershell, path):
                logger.info(f"✓ Disk deleted: {path}")
        except HyperVError as e:
            logger.error(f"Failed to delete disk {path}: {e}")

    # Only seed ISOs live in the per-VM directory; installation ISOs stay
    directory = vm_dir(config, name)
    seed_files = {drive['path'] for drive in dvd_drives if drive['path']}
    # The installer may have ejected the seed already
    seed_files.update(seed_iso_path(config, name, method) for method in ('kickstart', 'cloud-init'))
    for path in sorted(seed_files):
        if is_path_under(path, directory) and os.path.isfile(path):
            try:
                os.remove(path)
                logger.info(f"✓ Seed ISO deleted: {path}")
            except OSError as e:
                logger.error(f"Failed to delete seed ISO {path}: {e}")

    if os.path.isdir(directory):
        if remove_empty_dirs(directory):
            logger.info(f"✓ VM directory removed: {directory}")
        else:
            logger.info(f"→ VM directory not empty, kept: {directory}")

    return True
