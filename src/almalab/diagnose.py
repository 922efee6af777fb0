#!/usr/bin/env python3
"""
VM Diagnostics

Check a lab VM's Hyper-V configuration and seed ISOs for the usual causes
of failed boots and provisioning, and render the in-guest cloud-init
diagnostic script.
"""

import os
from typing import Dict, List

import yaml

from almalab.lab_utils import LabConfig, logger, HyperVError, SeedISOError
from almalab import hyperv
from almalab.hyperv import SECURE_BOOT_TEMPLATE
from almalab.kickstart import KS_FILENAME, OEMDRV_LABEL, validate_kickstart
from almalab.seed_iso import CIDATA_LABEL, read_seed_iso

OK = 'ok'
INFO = 'info'
WARNING = 'warning'
ERROR = 'error'

LEVEL_SYMBOLS = {OK: '✓', INFO: '→', WARNING: '!', ERROR: '✗'}

# Seed ISOs are a few KB; skip opening installation media
SEED_ISO_MAX_SIZE = 10 * 1024 * 1024


def finding(level: str, check: str, message: str) -> Dict:
    return {'level': level, 'check': check, 'message': message}


def check_cidata_files(files: Dict[str, str]) -> List[Dict]:
    """Check the contents of a NoCloud seed volume"""
    findings = []
    for required in ('user-data', 'meta-data'):
        if required not in files:
            findings.append(finding(ERROR, 'seed-iso', f"cidata volume is missing {required}"))

    user_data = files.get('user-data')
    if user_data is not None:
        if not user_data.startswith('#cloud-config'):
            findings.append(finding(ERROR, 'seed-iso', "user-data does not start with '#cloud-config'"))
        else:
            try:
                yaml.safe_load(user_data)
                findings.append(finding(OK, 'seed-iso', "user-data is valid #cloud-config YAML"))
            except yaml.YAMLError as e:
                findings.append(finding(ERROR, 'seed-iso', f"user-data is not valid YAML: {e}"))

    meta_data = files.get('meta-data')
    if meta_data is not None:
        try:
            meta = yaml.safe_load(meta_data) or {}
            if not isinstance(meta, dict) or 'instance-id' not in meta:
                findings.append(finding(WARNING, 'seed-iso', "meta-data has no instance-id"))
        except yaml.YAMLError as e:
            findings.append(finding(ERROR, 'seed-iso', f"meta-data is not valid YAML: {e}"))

    if 'network-config' in files:
        try:
            yaml.safe_load(files['network-config'])
        except yaml.YAMLError as e:
            findings.append(finding(ERROR, 'seed-iso', f"network-config is not valid YAML: {e}"))

    return findings


def check_seed_iso(path: str) -> List[Dict]:
    """Inspect a seed ISO attached to a VM (cidata or OEMDRV)"""
    try:
        volume_id, files = read_seed_iso(path)
    except SeedISOError as e:
        return [finding(ERROR, 'seed-iso', str(e))]

    if volume_id == CIDATA_LABEL:
        return [finding(OK, 'seed-iso', f"{os.path.basename(path)}: NoCloud volume '{volume_id}'")] \
            + check_cidata_files(files)

    if volume_id == OEMDRV_LABEL:
        if KS_FILENAME not in files:
            return [finding(ERROR, 'seed-iso', f"{os.path.basename(path)}: OEMDRV volume has no {KS_FILENAME}")]
        problems = validate_kickstart(files[KS_FILENAME])
        if problems:
            return [finding(ERROR, 'seed-iso', f"{KS_FILENAME}: {problem}") for problem in problems]
        return [finding(OK, 'seed-iso', f"{os.path.basename(path)}: OEMDRV volume with valid {KS_FILENAME}")]

    if volume_id.lower() == CIDATA_LABEL:
        return [finding(ERROR, 'seed-iso',
                        f"{os.path.basename(path)}: volume label '{volume_id}' must be lowercase '{CIDATA_LABEL}'")]

    return [finding(WARNING, 'seed-iso',
                    f"{os.path.basename(path)}: small ISO with unexpected volume label '{volume_id}'")]


def diagnose_vm(config: LabConfig, name: str) -> List[Dict]:
    """
    Run all host-side checks for a VM

    Args:
        config: LabConfig instance
        name: VM name

    Returns:
        List of findings ({'level', 'check', 'message'})
    """
    powershell = config.get_powershell()
    findings = []

    vm = hyperv.get_vm(powershell, name)
    if not vm:
        return [finding(ERROR, 'vm', f"VM '{name}' not found")]

    findings.append(finding(OK, 'vm', f"VM '{name}' exists (Generation {vm['generation']}, state: {vm['state']})"))
    if vm['state'] != 'running':
        findings.append(finding(WARNING, 'vm', f"VM is {vm['state']}, guest checks are skipped"))

    generation = vm['generation']

    # Firmware
    if generation == 2:
        firmware = hyperv.get_vm_firmware(powershell, name)
        if firmware:
            if firmware['secure_boot'] and firmware['secure_boot_template'] != SECURE_BOOT_TEMPLATE:
                findings.append(finding(
                    ERROR, 'firmware',
                    f"Secure Boot uses template '{firmware['secure_boot_template']}'; "
                    f"Linux shim needs {SECURE_BOOT_TEMPLATE} (or Secure Boot off)"
                ))
            elif firmware['secure_boot']:
                findings.append(finding(OK, 'firmware', f"Secure Boot on with {SECURE_BOOT_TEMPLATE}"))
            else:
                findings.append(finding(INFO, 'firmware', "Secure Boot is off"))

            boot_order = firmware['boot_order']
            if boot_order:
                first = boot_order[0]
                if first.startswith('Network'):
                    findings.append(finding(WARNING, 'boot-order', "First boot device is the network adapter (PXE)"))
                else:
                    findings.append(finding(INFO, 'boot-order', f"First boot device: {first}"))
    else:
        startup_order = hyperv.get_vm_bios(powershell, name)
        if startup_order:
            findings.append(finding(INFO, 'boot-order', f"BIOS startup order: {', '.join(startup_order)}"))

    # Nested virtualization
    processor = hyperv.get_vm_processor(powershell, name)
    memory = hyperv.get_vm_memory(powershell, name)
    if processor['nested']:
        if memory['dynamic']:
            findings.append(finding(ERROR, 'nested', "Nested virtualization requires static memory (dynamic memory is on)"))
        else:
            findings.append(finding(OK, 'nested', f"Nested virtualization enabled ({processor['count']} vCPU, "
                                                  f"{memory['startup']} MB static memory)"))
    elif config.get_nested_virtualization():
        findings.append(finding(WARNING, 'nested', "Virtualization extensions are not exposed to the guest"))

    # Network
    adapters = hyperv.get_vm_network_adapters(powershell, name)
    if not adapters:
        findings.append(finding(ERROR, 'network', "VM has no network adapter"))
    for adapter in adapters:
        if not adapter['switch']:
            findings.append(finding(ERROR, 'network', f"Adapter '{adapter['name']}' is not connected to a switch"))
            continue
        if hyperv.get_switch(powershell, adapter['switch']) is None:
            findings.append(finding(ERROR, 'network', f"Switch '{adapter['switch']}' does not exist"))
        else:
            findings.append(finding(OK, 'network', f"Adapter '{adapter['name']}' connected to '{adapter['switch']}'"))
        if processor['nested'] and not adapter['mac_spoofing']:
            findings.append(finding(WARNING, 'network',
                                    f"MAC address spoofing is off on '{adapter['name']}' (nested guests get no network)"))

    # DVD drives and seed ISOs
    for drive in hyperv.get_vm_dvd_drives(powershell, name):
        path = drive['path']
        if not path:
            continue
        if not hyperv.test_path(powershell, path):
            findings.append(finding(ERROR, 'dvd', f"ISO attached to the VM does not exist: {path}"))
            continue
        findings.append(finding(OK, 'dvd', f"ISO attached: {path}"))
        if os.path.isfile(path) and os.path.getsize(path) <= SEED_ISO_MAX_SIZE:
            findings.extend(check_seed_iso(path))

    # Guest reported addresses (KVP)
    if vm['state'] == 'running':
        try:
            addresses = hyperv.get_vm_ip_addresses(powershell, name)
        except HyperVError as e:
            logger.debug(f"Could not query IP addresses: {e}")
            addresses = []
        if addresses:
            findings.append(finding(OK, 'ip', f"Guest reports IP address(es): {', '.join(addresses)}"))
        else:
            findings.append(finding(
                WARNING, 'ip',
                "Guest reports no IPv4 address: hyperv-daemons (KVP) not running, no DHCP on the switch, "
                "or provisioning has not finished"
            ))

    return findings


def format_findings(findings: List[Dict]) -> str:
    """Format findings for the console, with an error/warning summary line"""
    lines = []
    for item in findings:
        symbol = LEVEL_SYMBOLS.get(item['level'], '?')
        lines.append(f"  {symbol} [{item['check']}] {item['message']}")

    errors = sum(1 for item in findings if item['level'] == ERROR)
    warnings = sum(1 for item in findings if item['level'] == WARNING)
    lines.append("")
    lines.append(f"{errors} error(s), {warnings} warning(s)")
    return "\n".join(lines)


def render_guest_diagnostic_script() -> str:
    """
    Bash script to run inside a guest whose cloud-init did not run

    Reports cloud-init status, units, disable files, ds-identify,
    generator, logs, kernel command line, config files, DMI product name
    and the contents of any attached seed CD-ROM.
    """
    return GUEST_DIAGNOSTIC_SCRIPT


GUEST_DIAGNOSTIC_SCRIPT = r"""#!/bin/bash
# cloud-init diagnostic for lab VMs

echo "=== Cloud-init Diagnostic ==="

echo
echo "1. CLOUD-INIT STATUS:"
cloud-init status --long
echo "Exit code: $?"

echo
echo "2. SYSTEMD UNITS:"
for service in cloud-init-local cloud-init cloud-config cloud-final; do
    echo "--- $service.service ---"
    systemctl status "$service.service" --no-pager -l
    echo "Is-enabled: $(systemctl is-enabled "$service.service" 2>/dev/null || echo 'UNKNOWN')"
    echo "Is-active: $(systemctl is-active "$service.service" 2>/dev/null || echo 'UNKNOWN')"
done

echo
echo "3. DISABLE FILES:"
for file in /etc/cloud/cloud-init.disabled /run/cloud-init/disabled /var/lib/cloud/data/disabled; do
    if [ -f "$file" ]; then
        echo "FOUND: $file"
        cat "$file"
    else
        echo "NOT FOUND: $file"
    fi
done
grep -o 'cloud-init=disabled' /proc/cmdline && echo "cloud-init disabled on the kernel command line"

echo
echo "4. DS-IDENTIFY:"
if [ -f /etc/cloud/ds-identify.cfg ]; then
    cat /etc/cloud/ds-identify.cfg
else
    echo "ds-identify.cfg NOT FOUND"
fi
/usr/lib/cloud-init/ds-identify check 2>&1 || echo "ds-identify failed"
[ -f /run/cloud-init/ds-identify.log ] && tail -n 30 /run/cloud-init/ds-identify.log

echo
echo "5. GENERATOR:"
ls -la /lib/systemd/system-generators/cloud-init-generator 2>/dev/null || echo "Generator not found"
ls -la /run/systemd/generator.early/ 2>/dev/null | grep -i cloud || echo "No cloud-init generator output"

echo
echo "6. LOGS:"
journalctl -u cloud-init-local -n 20 --no-pager 2>/dev/null || echo "No cloud-init-local logs"
journalctl -u cloud-init -n 20 --no-pager 2>/dev/null || echo "No cloud-init logs"
[ -f /var/log/cloud-init.log ] && grep -iE 'warn|error|trace' /var/log/cloud-init.log | tail -n 30

echo
echo "7. KERNEL COMMAND LINE:"
cat /proc/cmdline

echo
echo "8. CONFIG FILES:"
find /etc/cloud -name "*.cfg" -exec echo "=== {} ===" \; -exec cat {} \;

echo
echo "9. ENVIRONMENT:"
echo "DMI_PRODUCT_NAME: $(cat /sys/class/dmi/id/product_name 2>/dev/null || echo 'N/A')"
echo "DMI_SYS_VENDOR: $(cat /sys/class/dmi/id/sys_vendor 2>/dev/null || echo 'N/A')"
echo "hypervkvpd: $(systemctl is-active hypervkvpd 2>/dev/null || echo 'UNKNOWN')"

echo
echo "10. CD-ROM DATASOURCE:"
lsblk -o NAME,TYPE,LABEL,FSTYPE | grep -E 'rom|LABEL'
blkid -t LABEL=cidata 2>/dev/null || echo "No volume labelled cidata"
for device in /dev/sr0 /dev/sr1; do
    [ -e "$device" ] || continue
    echo "--- $device ($(blkid -s LABEL -o value "$device" 2>/dev/null)) ---"
    mkdir -p /tmp/cdrom-check
    if mount -o ro "$device" /tmp/cdrom-check 2>/dev/null; then
        ls -la /tmp/cdrom-check/
        [ -f /tmp/cdrom-check/user-data ] && echo "Found user-data" && head -n 1 /tmp/cdrom-check/user-data
        [ -f /tmp/cdrom-check/meta-data ] && echo "Found meta-data"
        [ -f /tmp/cdrom-check/ks.cfg ] && echo "Found ks.cfg"
        umount /tmp/cdrom-check
    else
        echo "Could not mount $device"
    fi
done

echo
echo "=== DIAGNOSIS COMPLETE ==="
"""
