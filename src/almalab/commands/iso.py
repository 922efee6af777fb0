"""Installation ISO commands"""

import os
import sys

from almalab.lab_utils import (
    ALMA_RELEASES,
    load_config_or_exit,
    logger,
    ISODownloadError,
)
from almalab.iso_download import (
    build_iso_url,
    download_iso,
    fetch_expected_checksum,
    find_local_iso,
    iso_filename,
    list_local_isos,
    sha256_file,
)

FLAVOURS = ['boot', 'minimal', 'dvd']


def _add_release_arguments(parser):
    parser.add_argument('-r', '--release', choices=sorted(ALMA_RELEASES.keys()),
                        help='AlmaLinux release (default: from config)')
    parser.add_argument('-f', '--flavour', choices=FLAVOURS,
                        help='ISO flavour (default: from config)')


def setup_download_parser(parser):
    """Setup argument parser for iso download command"""
    _add_release_arguments(parser)
    parser.add_argument('--force', action='store_true',
                        help='Download even if the ISO already exists')
    parser.add_argument('--no-verify', action='store_true',
                        help='Skip checksum verification')


def setup_list_parser(parser):
    """Setup argument parser for iso list command"""
    pass


def setup_verify_parser(parser):
    """Setup argument parser for iso verify command"""
    _add_release_arguments(parser)


def handle_download(args):
    """Handle iso download command"""
    config = load_config_or_exit(args.config)

    release = args.release or config.get_release()
    flavour = args.flavour or config.get_iso_flavour()
    mirror = config.get_mirror()
    verify_ssl = config.get_verify_ssl()

    try:
        url = build_iso_url(release, flavour, mirror)
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    dest = os.path.join(config.get_iso_dir(), iso_filename(release, flavour))

    print(f"\n{'=' * 80}")
    print(f"Processing: {ALMA_RELEASES[release]['name']} ({flavour})")
    print('=' * 80)

    try:
        expected = None
        if not args.no_verify:
            expected = fetch_expected_checksum(release, flavour, mirror, verify_ssl=verify_ssl)
        download_iso(url, dest, expected_sha256=expected, verify_ssl=verify_ssl, force=args.force)
    except ISODownloadError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"✓ ISO ready: {dest}")


def handle_list(args):
    """Handle iso list command"""
    config = load_config_or_exit(args.config)
    iso_dir = config.get_iso_dir()

    isos = list_local_isos(iso_dir)
    if not isos:
        print(f"\nNo ISOs found in {iso_dir}")
        return

    print("\n" + "=" * 100)
    print(f"ISOs in {iso_dir}:")
    print("=" * 100)
    print(f"{'Filename':<50} {'Release':<10} {'Flavour':<10} {'Size':>12}")
    print("-" * 100)
    for item in isos:
        size_mb = f"{item['size'] / (1024 * 1024):.0f} MB"
        print(f"{item['filename']:<50} {item['release'] or '-':<10} {item['flavour'] or '-':<10} {size_mb:>12}")
    print("=" * 100)
    print(f"\nTotal: {len(isos)} ISO(s)")


def handle_verify(args):
    """Handle iso verify command"""
    config = load_config_or_exit(args.config)

    release = args.release or config.get_release()
    flavour = args.flavour or config.get_iso_flavour()

    path = find_local_iso(config.get_iso_dir(), release, flavour)
    if not path:
        logger.error(f"No {release} {flavour} ISO in {config.get_iso_dir()}")
        sys.exit(1)

    try:
        expected = fetch_expected_checksum(release, flavour, config.get_mirror(), verify_ssl=config.get_verify_ssl())
    except ISODownloadError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"→ Computing SHA256 of {path}...")
    actual = sha256_file(path)
    if actual != expected:
        logger.error(f"Checksum mismatch for {os.path.basename(path)}: expected {expected}, got {actual}")
        sys.exit(1)

    logger.info(f"✓ Checksum verified: {path}")
