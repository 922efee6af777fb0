"""Packer template commands"""

import os
import sys

from almalab.lab_utils import (
    ALMA_RELEASES,
    LabConfig,
    LabConfigError,
    load_config_or_exit,
    logger,
    encrypt_password,
    read_ssh_key,
    PackerError,
)
from almalab.iso_download import (
    build_checksum_url,
    build_iso_url,
    find_local_iso,
    sha256_file,
)
from almalab.kickstart import (
    generate_kickstart,
    kernel_boot_args,
    ks_location_for,
    packer_boot_command,
    validate_kickstart,
)
from almalab.packer import (
    build_packer_template,
    find_built_vhdx,
    packer_build,
    packer_init,
    packer_validate,
    prepare_build_dir,
)
from almalab.postinstall import postinstall_options, render_postinstall_script

TEMPLATE_VM_NAME = 'almalinux-template'


def _add_common_arguments(parser):
    parser.add_argument('-g', '--generation', type=int, choices=[1, 2],
                        help='Hyper-V generation: 1 (BIOS) or 2 (UEFI) (default: from config)')
    parser.add_argument('--build-dir',
                        help='Directory for the template, ks.cfg and postinstall.sh (default: from config)')


def _add_iso_arguments(parser):
    parser.add_argument('-r', '--release', choices=sorted(ALMA_RELEASES.keys()),
                        help='AlmaLinux release (default: from config)')
    parser.add_argument('--flavour', choices=['boot', 'minimal', 'dvd'],
                        help='ISO flavour (default: from config)')
    parser.add_argument('--iso', dest='iso_path',
                        help='Local installation ISO (default: downloaded ISO, else the mirror URL)')
    parser.add_argument('--vm-name', default=TEMPLATE_VM_NAME,
                        help=f'Name of the build VM and exported disk (default: {TEMPLATE_VM_NAME})')


def setup_render_parser(parser):
    """Setup argument parser for packer render command"""
    _add_common_arguments(parser)


def setup_validate_parser(parser):
    """Setup argument parser for packer validate command"""
    _add_common_arguments(parser)
    _add_iso_arguments(parser)


def setup_build_parser(parser):
    """Setup argument parser for packer build command"""
    _add_common_arguments(parser)
    _add_iso_arguments(parser)
    parser.add_argument('--force', action='store_true',
                        help='Replace an existing output directory')
    parser.add_argument('--packer-log',
                        help='Write the detailed Packer log (PACKER_LOG) to this file')


def render_packer_kickstart(config: LabConfig) -> str:
    """
    Kickstart for a Packer template build

    The lab user doubles as Packer's SSH user, with the packer.ssh_password
    encrypted as its password. cloud-init is installed so VMs cloned from
    the template pick up their NoCloud seed.
    """
    root_password = config.get_root_password()
    if not root_password:
        raise LabConfigError("defaults.root_password must be set for Packer builds")

    key_file = config.get_default_ssh_key_file()
    ssh_keys = [read_ssh_key(key_file)] if key_file else []

    return generate_kickstart(
        hostname=TEMPLATE_VM_NAME,
        root_password=root_password,
        username=config.get_default_username(),
        user_password=encrypt_password(config.get_packer_ssh_password()),
        ssh_keys=ssh_keys,
        dns_servers=config.get_network_dns_servers(),
        domain=config.get_network_domain(),
        timezone=config.get_timezone(),
        install_cloud_init=True
    )


def render_build_files(config: LabConfig, generation: int, build_dir: str):
    """
    Render the template, kickstart and post-install script into build_dir

    Returns:
        Dict of written paths (see prepare_build_dir)
    """
    ks_text = render_packer_kickstart(config)
    problems = validate_kickstart(ks_text)
    if problems:
        raise PackerError("Generated kickstart is invalid: " + "; ".join(problems))

    boot_args = kernel_boot_args(ks_location_for('http'))
    template_text = build_packer_template(
        generation,
        packer_boot_command(generation, boot_args),
        cpus=config.get_default_cores(),
        memory=config.get_default_memory(),
        disk_size=config.get_default_disk_size(),
        ssh_username=config.get_default_username(),
        headless=config.get_packer_headless(),
        secure_boot=config.get_secure_boot(),
        nested=config.get_nested_virtualization(),
        http_ports=config.get_packer_http_ports()
    )
    postinstall_text = render_postinstall_script(
        username=config.get_default_username(),
        timezone=config.get_timezone(),
        **postinstall_options(config.get_postinstall())
    )
    return prepare_build_dir(build_dir, template_text, ks_text, postinstall_text)


def packer_variables(config: LabConfig, args) -> dict:
    """
    Values for the template variables

    A local ISO is used with its computed SHA256; otherwise Packer
    downloads from the mirror and checks against the published CHECKSUM.
    """
    release = args.release or config.get_release()
    flavour = args.flavour or config.get_iso_flavour()

    iso_path = args.iso_path or find_local_iso(config.get_iso_dir(), release, flavour)
    if iso_path:
        if not os.path.isfile(iso_path):
            raise FileNotFoundError(f"ISO not found: {iso_path}")
        logger.info(f"→ Computing SHA256 of {iso_path}...")
        iso_url = os.path.abspath(iso_path)
        iso_checksum = f"sha256:{sha256_file(iso_path)}"
    else:
        iso_url = build_iso_url(release, flavour, config.get_mirror())
        iso_checksum = f"file:{build_checksum_url(release, config.get_mirror())}"

    return {
        'iso_url': iso_url,
        'iso_checksum': iso_checksum,
        'vm_name': args.vm_name,
        'switch_name': config.get_switch_name(),
        'output_directory': os.path.abspath(config.get_packer_output_dir()),
        'ssh_password': config.get_packer_ssh_password(),
    }


def _render_or_exit(config: LabConfig, args):
    build_dir = os.path.abspath(args.build_dir or config.get_packer_build_dir())
    try:
        generation = args.generation or config.get_default_generation()
        paths = render_build_files(config, generation, build_dir)
    except (LabConfigError, PackerError, FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)
    return build_dir, generation, paths


def handle_render(args):
    """Handle packer render command"""
    config = load_config_or_exit(args.config)
    build_dir, generation, paths = _render_or_exit(config, args)

    print("\n" + "=" * 80)
    print(f"Packer build files (Generation {generation}):")
    print("=" * 80)
    print(f"  Template:     {paths['template']}")
    print(f"  Kickstart:    {paths['kickstart']}")
    print(f"  Post-install: {paths['postinstall']}")
    print("=" * 80)
    print(f"\nBuild with: almalab packer build --build-dir {build_dir}")


def handle_validate(args):
    """Handle packer validate command"""
    config = load_config_or_exit(args.config)
    build_dir, _, paths = _render_or_exit(config, args)
    packer_binary = config.get_packer_binary()

    try:
        variables = packer_variables(config, args)
        packer_init(paths['template'], packer_binary=packer_binary, cwd=build_dir)
        packer_validate(paths['template'], variables=variables, packer_binary=packer_binary, cwd=build_dir)
    except (LabConfigError, PackerError, FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info("✓ Packer template is valid")


def handle_build(args):
    """Handle packer build command"""
    config = load_config_or_exit(args.config)
    build_dir, generation, paths = _render_or_exit(config, args)
    packer_binary = config.get_packer_binary()

    try:
        variables = packer_variables(config, args)
    except (LabConfigError, FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)

    print("\n" + "=" * 80)
    print("Packer build:")
    print("=" * 80)
    print(f"  VM name:    {variables['vm_name']}")
    print(f"  Generation: {generation}")
    print(f"  ISO:        {variables['iso_url']}")
    print(f"  Switch:     {variables['switch_name']}")
    print(f"  Output:     {variables['output_directory']}")
    print("=" * 80 + "\n")

    try:
        packer_init(paths['template'], packer_binary=packer_binary, cwd=build_dir)
        packer_build(paths['template'], variables=variables, packer_binary=packer_binary,
                     cwd=build_dir, force=args.force, log_file=args.packer_log)
    except PackerError as e:
        logger.error(str(e))
        sys.exit(1)

    vhdx = find_built_vhdx(variables['output_directory'])
    if not vhdx:
        logger.error(f"Packer finished but no VHDX was found in {variables['output_directory']}")
        sys.exit(1)

    logger.info(f"✓ Template disk: {vhdx}")
    print("\nSet defaults.template_vhdx to this path to create cloud-init VMs from it:")
    print(f"  template_vhdx: {vhdx}")
