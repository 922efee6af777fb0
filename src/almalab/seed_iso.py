#!/usr/bin/env python3
"""
Seed ISO Creation

Build the small ISO images that hand configuration to a VM on first boot:
NoCloud 'cidata' volumes for cloud-init and 'OEMDRV' volumes that anaconda
scans for ks.cfg.
"""

import io
import os
import re
from typing import Dict, Optional, Tuple

import pycdlib

from almalab.lab_utils import (
    logger,
    generate_cloud_init_config,
    generate_network_config,
    generate_meta_data,
    SeedISOError,
)
from almalab.kickstart import KS_FILENAME, OEMDRV_LABEL

CIDATA_LABEL = 'cidata'


def iso9660_name(filename: str, used: Optional[set] = None) -> str:
    """
    Derive an ISO9660 level 1 (8.3) name: 'user-data' -> '/USERDATA.;1'

    Joliet and Rock Ridge carry the real name; this one only has to be
    valid and unique.
    """
    base, _, ext = filename.rpartition('.') if '.' in filename else (filename, '', '')
    base = re.sub(r'[^A-Z0-9_]', '', base.upper())[:8] or 'FILE'
    ext = re.sub(r'[^A-Z0-9_]', '', ext.upper())[:3]

    name = f"/{base}.{ext};1"
    counter = 1
    while used is not None and name in used:
        suffix = str(counter)
        name = f"/{base[:8 - len(suffix)]}{suffix}.{ext};1"
        counter += 1
    if used is not None:
        used.add(name)
    return name


def build_seed_iso(files: Dict[str, str], iso_path: str, volume_id: str) -> str:
    """
    Write an ISO image containing the given text files in its root directory

    Args:
        files: Mapping of file name to text content
        iso_path: Output path (overwritten if it exists)
        volume_id: Volume label ('cidata', 'OEMDRV', ...)

    Returns:
        Path to the ISO image

    Raises:
        SeedISOError if the image cannot be written
    """
    if not files:
        raise SeedISOError("A seed ISO needs at least one file")

    directory = os.path.dirname(os.path.abspath(iso_path))
    os.makedirs(directory, exist_ok=True)

    iso = pycdlib.PyCdlib()
    try:
        iso.new(joliet=3, rock_ridge='1.09', vol_ident=volume_id)

        used = set()
        for filename, content in files.items():
            data = content.encode('utf-8')
            iso.add_fp(io.BytesIO(data), len(data), iso9660_name(filename, used),
                       rr_name=filename, joliet_path=f"/{filename}")

        iso.write(iso_path)
    except (pycdlib.pycdlibexception.PyCdlibException, OSError) as e:
        raise SeedISOError(f"Failed to create ISO {iso_path} with pycdlib: {e}") from e
    finally:
        iso.close()

    logger.info(f"✓ ISO created: {iso_path} (volume ID: {volume_id})")
    return iso_path


def create_cloud_init_iso(
    iso_path: str,
    hostname: str,
    username: str,
    ssh_keys=None,
    password: Optional[str] = None,
    ip_address: Optional[str] = None,
    gateway: Optional[str] = None,
    dns_servers=None,
    domain: Optional[str] = None,
    timezone: str = 'UTC',
    packages=None,
    postinstall_script: Optional[str] = None,
    instance_id: Optional[str] = None
) -> str:
    """
    Create a NoCloud seed ISO (volume 'cidata') with user-data, meta-data and network-config

    Returns:
        Path to the ISO image
    """
    logger.info("→ Creating cloud-init ISO file...")
    files = {
        'user-data': generate_cloud_init_config(
            username=username,
            hostname=hostname,
            ssh_keys=ssh_keys,
            password=password,
            domain=domain,
            timezone=timezone,
            packages=packages,
            postinstall_script=postinstall_script
        ),
        'meta-data': generate_meta_data(instance_id or hostname, hostname),
        'network-config': generate_network_config(
            ip_address=ip_address,
            gateway=gateway,
            dns_servers=dns_servers,
            domain=domain
        ),
    }
    return build_seed_iso(files, iso_path, CIDATA_LABEL)


def create_kickstart_iso(ks_text: str, iso_path: str) -> str:
    """
    Create an OEMDRV volume holding ks.cfg

    Anaconda loads /ks.cfg from a volume labelled OEMDRV without any
    inst.ks boot argument.
    """
    logger.info("→ Creating kickstart ISO file...")
    return build_seed_iso({KS_FILENAME: ks_text}, iso_path, OEMDRV_LABEL)


def read_seed_iso(iso_path: str) -> Tuple[str, Dict[str, str]]:
    """
    Read the volume label and root files of a seed ISO

    Returns:
        (volume_id, {filename: text})

    Raises:
        SeedISOError if the file is missing or not an ISO image
    """
    if not os.path.isfile(iso_path):
        raise SeedISOError(f"Seed ISO not found: {iso_path}")

    iso = pycdlib.PyCdlib()
    try:
        iso.open(iso_path)
    except pycdlib.pycdlibexception.PyCdlibException as e:
        raise SeedISOError(f"Cannot read {iso_path}: {e}") from e

    try:
        volume_id = iso.pvd.volume_identifier.decode('utf-8', errors='replace').strip()

        if iso.has_joliet():
            facade_args = 'joliet_path'
        elif iso.has_rock_ridge():
            facade_args = 'rr_path'
        else:
            facade_args = 'iso_path'

        files = {}
        for dirpath, _, filenames in iso.walk(**{facade_args: '/'}):
            if dirpath != '/':
                continue
            for filename in filenames:
                buffer = io.BytesIO()
                iso.get_file_from_iso_fp(buffer, **{facade_args: f"/{filename}"})
                name = filename.split(';')[0].rstrip('.').lower() if facade_args == 'iso_path' else filename
                files[name] = buffer.getvalue().decode('utf-8', errors='replace')
    except pycdlib.pycdlibexception.PyCdlibException as e:
        raise SeedISOError(f"Cannot read files from {iso_path}: {e}") from e
    finally:
        iso.close()

    return volume_id, files
