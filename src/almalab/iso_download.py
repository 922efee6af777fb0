#!/usr/bin/env python3
"""
AlmaLinux ISO Download

Download installation ISOs from an AlmaLinux mirror and verify them
against the published CHECKSUM file.
"""

import hashlib
import os
import re
from typing import Dict, List, Optional

import requests

from almalab.lab_utils import (
    ALMA_RELEASES,
    DEFAULT_MIRROR,
    logger,
    ISODownloadError,
    ChecksumMismatchError,
)

CHUNK_SIZE = 1024 * 1024
CHECKSUM_FILENAME = 'CHECKSUM'

# SHA256 (AlmaLinux-9-latest-x86_64-minimal.iso) = 0123abcd...
BSD_CHECKSUM_RE = re.compile(r'^SHA256\s*\((?P<name>[^)]+)\)\s*=\s*(?P<hash>[0-9a-fA-F]{64})\s*$')
# 0123abcd...  AlmaLinux-9-latest-x86_64-minimal.iso
GNU_CHECKSUM_RE = re.compile(r'^(?P<hash>[0-9a-fA-F]{64})\s+\*?(?P<name>\S.*?)\s*$')


def iso_filename(release: str, flavour: str) -> str:
    """
    Get the ISO file name for a release and flavour

    Raises:
        ValueError for unknown releases or flavours
    """
    if release not in ALMA_RELEASES:
        valid = ', '.join(sorted(ALMA_RELEASES.keys()))
        raise ValueError(f"Invalid release: {release}. Valid options: {valid}")
    info = ALMA_RELEASES[release]
    if flavour not in info['flavours']:
        raise ValueError(f"Invalid ISO flavour: {flavour}. Valid options: {', '.join(info['flavours'])}")
    return f"AlmaLinux-{info['major']}-latest-x86_64-{flavour}.iso"


def _release_dir_url(release: str, mirror: str) -> str:
    return f"{mirror.rstrip('/')}/{ALMA_RELEASES[release]['major']}/isos/x86_64"


def build_iso_url(release: str, flavour: str = 'minimal', mirror: str = DEFAULT_MIRROR) -> str:
    """Build the download URL of an installation ISO"""
    filename = iso_filename(release, flavour)
    return f"{_release_dir_url(release, mirror)}/{filename}"


def build_checksum_url(release: str, mirror: str = DEFAULT_MIRROR) -> str:
    """Build the URL of the CHECKSUM file next to the ISOs"""
    if release not in ALMA_RELEASES:
        raise ValueError(f"Invalid release: {release}")
    return f"{_release_dir_url(release, mirror)}/{CHECKSUM_FILENAME}"


def parse_checksums(text: str) -> Dict[str, str]:
    """
    Parse a checksum file in BSD or GNU coreutils format

    Returns:
        Mapping of file name to lowercase SHA256 hex digest
    """
    checksums = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        match = BSD_CHECKSUM_RE.match(line) or GNU_CHECKSUM_RE.match(line)
        if match:
            checksums[match.group('name').strip()] = match.group('hash').lower()
    return checksums


def fetch_expected_checksum(release: str, flavour: str, mirror: str = DEFAULT_MIRROR,
                            verify_ssl: bool = True, timeout: int = 30) -> str:
    """
    Download the CHECKSUM file and return the SHA256 of the requested ISO

    Raises:
        ISODownloadError if the file cannot be fetched or lists no entry for the ISO
    """
    url = build_checksum_url(release, mirror)
    filename = iso_filename(release, flavour)

    logger.info(f"→ Fetching checksums from {url}")
    try:
        response = requests.get(url, timeout=timeout, verify=verify_ssl)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise ISODownloadError(f"Failed to download checksum file {url}: {e}") from e

    checksums = parse_checksums(response.text)
    if filename not in checksums:
        raise ISODownloadError(f"No checksum for {filename} in {url}")
    return checksums[filename]


def sha256_file(path: str) -> str:
    """Compute the SHA256 hex digest of a file"""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def download_iso(url: str, dest: str, expected_sha256: Optional[str] = None,
                 verify_ssl: bool = True, force: bool = False, timeout: int = 60) -> str:
    """
    Download an ISO and verify its checksum

    The file is streamed to '<dest>.part' and only renamed to dest once the
    checksum matches. An existing dest with the right checksum is kept.

    Args:
        url: ISO URL
        dest: Destination file path
        expected_sha256: Expected SHA256 hex digest (verification skipped if None)
        verify_ssl: Verify the mirror's TLS certificate
        force: Download even if dest already exists
        timeout: Connect/read timeout in seconds

    Returns:
        Path to the downloaded ISO

    Raises:
        ISODownloadError if the download fails
        ChecksumMismatchError if the downloaded file does not match
    """
    expected = expected_sha256.lower() if expected_sha256 else None

    if os.path.exists(dest) and not force:
        if expected is None:
            logger.info(f"→ ISO '{dest}' already exists, skipping download")
            return dest
        logger.info(f"→ ISO '{dest}' already exists, verifying checksum...")
        if sha256_file(dest) == expected:
            logger.info("✓ Existing ISO checksum matches, skipping download")
            return dest
        logger.warning("→ Existing ISO checksum does not match, downloading again")

    os.makedirs(os.path.dirname(os.path.abspath(dest)), exist_ok=True)
    part_path = dest + '.part'

    logger.info(f"→ Downloading {url}")
    digest = hashlib.sha256()
    try:
        with requests.get(url, stream=True, timeout=timeout, verify=verify_ssl) as response:
            response.raise_for_status()
            total = int(response.headers.get('content-length', 0))
            downloaded = 0
            next_report = 10

            with open(part_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    f.write(chunk)
                    digest.update(chunk)
                    downloaded += len(chunk)

                    # Print progress every 10%
                    if total:
                        percent = downloaded * 100 // total
                        if percent >= next_report:
                            logger.info(f"→ Download progress: {percent}% "
                                        f"({downloaded // (1024 * 1024)} / {total // (1024 * 1024)} MB)")
                            next_report = (percent // 10 + 1) * 10
    except requests.exceptions.RequestException as e:
        _remove_quietly(part_path)
        raise ISODownloadError(f"Failed to download {url}: {e}") from e
    except OSError as e:
        _remove_quietly(part_path)
        raise ISODownloadError(f"Failed to write {part_path}: {e}") from e

    actual = digest.hexdigest()
    if expected and actual != expected:
        _remove_quietly(part_path)
        raise ChecksumMismatchError(
            f"Checksum mismatch for {os.path.basename(dest)}: expected {expected}, got {actual}"
        )
    if expected:
        logger.info("✓ Checksum verified")

    os.replace(part_path, dest)
    logger.info(f"✓ ISO downloaded: {dest}")
    return dest


def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def find_local_iso(iso_dir: str, release: str, flavour: str) -> Optional[str]:
    """Return the path of a previously downloaded ISO, or None"""
    path = os.path.join(iso_dir, iso_filename(release, flavour))
    return path if os.path.isfile(path) else None


def list_local_isos(iso_dir: str) -> List[Dict]:
    """
    List AlmaLinux ISOs in the ISO directory

    Returns:
        List of dicts with 'filename', 'path', 'size', 'release', 'flavour'
        (release/flavour are None for files not named like mirror ISOs)
    """
    if not os.path.isdir(iso_dir):
        return []

    known = {}
    for release, info in ALMA_RELEASES.items():
        for flavour in info['flavours']:
            known[iso_filename(release, flavour)] = (release, flavour)

    isos = []
    for filename in sorted(os.listdir(iso_dir)):
        if not filename.lower().endswith('.iso'):
            continue
        path = os.path.join(iso_dir, filename)
        release, flavour = known.get(filename, (None, None))
        isos.append({
            'filename': filename,
            'path': path,
            'size': os.path.getsize(path),
            'release': release,
            'flavour': flavour,
        })
    return isos
