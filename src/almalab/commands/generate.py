"""Artifact generation commands (kickstart, cloud-init, post-install, diagnostics)"""

import getpass
import os
import sys
import uuid

from almalab.lab_utils import (
    LabConfig,
    LabConfigError,
    load_config_or_exit,
    logger,
    encrypt_password,
    generate_cloud_init_config,
    generate_meta_data,
    generate_network_config,
    read_ssh_key,
    validate_vm_name,
    SeedISOError,
)
from almalab.kickstart import generate_kickstart, validate_kickstart
from almalab.seed_iso import create_cloud_init_iso, create_kickstart_iso
from almalab.postinstall import postinstall_options, render_postinstall_script
from almalab.diagnose import render_guest_diagnostic_script
from almalab.commands.packer import render_packer_kickstart


def _add_guest_arguments(parser):
    parser.add_argument('hostname', nargs='?',
                        help='Guest hostname')
    parser.add_argument('-u', '--username',
                        help='Primary user to create (default: from config)')
    parser.add_argument('-k', '--keyfile', dest='ssh_key_file',
                        help='SSH public key file path (default: from config)')
    parser.add_argument('--ip', dest='ip_address',
                        help="Static IP address in CIDR notation, or 'dhcp' (default: from config)")
    parser.add_argument('--no-postinstall', action='store_true',
                        help='Do not embed the lab post-install script')


def setup_kickstart_parser(parser):
    """Setup argument parser for generate kickstart command"""
    _add_guest_arguments(parser)
    parser.add_argument('--packer', action='store_true',
                        help='Render the kickstart used for Packer template builds (hostname is ignored)')
    parser.add_argument('--cloud-init', action='store_true',
                        help='Install cloud-init (NoCloud datasource only)')
    parser.add_argument('-o', '--output',
                        help='Output file (default: stdout)')
    parser.add_argument('--iso',
                        help='Also write an OEMDRV seed ISO holding ks.cfg to this path')


def setup_cloud_init_parser(parser):
    """Setup argument parser for generate cloud-init command"""
    _add_guest_arguments(parser)
    parser.add_argument('-o', '--output-dir', default='.',
                        help='Directory for user-data, meta-data and network-config (default: .)')
    parser.add_argument('--iso',
                        help='Write a cidata seed ISO to this path instead of loose files')


def setup_postinstall_parser(parser):
    """Setup argument parser for generate postinstall command"""
    parser.add_argument('-u', '--username',
                        help='Lab user (default: from config)')
    parser.add_argument('-o', '--output',
                        help='Output file (default: stdout)')


def setup_guest_diagnostic_parser(parser):
    """Setup argument parser for generate guest-diagnostic command"""
    parser.add_argument('-o', '--output',
                        help='Output file (default: stdout)')


def setup_password_hash_parser(parser):
    """Setup argument parser for generate password-hash command"""
    pass


def _write_output(text: str, output: str = None, executable: bool = False):
    """Write text to a file with LF line endings, or to stdout"""
    if not output:
        sys.stdout.write(text)
        return
    directory = os.path.dirname(output)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(output, 'w', newline='\n') as f:
        f.write(text)
    if executable:
        os.chmod(output, 0o755)
    logger.info(f"✓ Wrote {output}")


def _guest_settings(config: LabConfig, args) -> dict:
    """Resolve user, SSH keys, network and post-install script from args and config"""
    if not args.hostname or not validate_vm_name(args.hostname):
        logger.error(f"Invalid hostname '{args.hostname}': use letters, digits and dashes (max 63 characters)")
        sys.exit(1)

    username = args.username or config.get_default_username()
    key_file = args.ssh_key_file or config.get_default_ssh_key_file()
    try:
        ssh_keys = [read_ssh_key(key_file)] if key_file else []
    except (FileNotFoundError, ValueError, IOError) as e:
        logger.error(str(e))
        sys.exit(1)

    ip_address = args.ip_address or config.get_network_ipaddress()
    if ip_address.lower() == 'dhcp':
        ip_address = None
    elif '/' not in ip_address:
        logger.error(f"IP address must be in CIDR notation (e.g., 192.168.100.10/24), got {ip_address}")
        sys.exit(1)

    postinstall_script = None
    if not args.no_postinstall:
        try:
            postinstall_script = render_postinstall_script(
                username=username,
                timezone=config.get_timezone(),
                **postinstall_options(config.get_postinstall())
            )
        except ValueError as e:
            logger.error(f"Invalid postinstall settings: {e}")
            sys.exit(1)

    return {
        'username': username,
        'ssh_keys': ssh_keys,
        'password': config.get_default_password(),
        'ip_address': ip_address,
        'gateway': config.get_network_gateway() if ip_address else None,
        'dns_servers': config.get_network_dns_servers(),
        'domain': config.get_network_domain(),
        'timezone': config.get_timezone(),
        'postinstall_script': postinstall_script,
    }


def handle_kickstart(args):
    """Handle generate kickstart command"""
    config = load_config_or_exit(args.config)

    try:
        if args.packer:
            ks_text = render_packer_kickstart(config)
        else:
            settings = _guest_settings(config, args)
            root_password = config.get_root_password()
            if not root_password:
                logger.error("defaults.root_password must be set to render a kickstart")
                sys.exit(1)
            ks_text = generate_kickstart(
                hostname=args.hostname,
                root_password=root_password,
                username=settings['username'],
                user_password=settings['password'],
                ssh_keys=settings['ssh_keys'],
                ip_address=settings['ip_address'],
                gateway=settings['gateway'],
                dns_servers=settings['dns_servers'],
                domain=settings['domain'],
                timezone=settings['timezone'],
                install_cloud_init=args.cloud_init,
                postinstall_script=settings['postinstall_script']
            )
    except (LabConfigError, ValueError, FileNotFoundError) as e:
        logger.error(str(e))
        sys.exit(1)

    for problem in validate_kickstart(ks_text):
        logger.warning(f"! {problem}")

    _write_output(ks_text, args.output)

    if args.iso:
        try:
            create_kickstart_iso(ks_text, args.iso)
        except SeedISOError as e:
            logger.error(str(e))
            sys.exit(1)
        logger.info(f"✓ Kickstart ISO: {args.iso}")


def handle_cloud_init(args):
    """Handle generate cloud-init command"""
    config = load_config_or_exit(args.config)
    settings = _guest_settings(config, args)
    instance_id = f"{args.hostname}-{uuid.uuid4().hex[:8]}"

    if args.iso:
        try:
            create_cloud_init_iso(
                args.iso,
                hostname=args.hostname,
                instance_id=instance_id,
                **settings
            )
        except SeedISOError as e:
            logger.error(str(e))
            sys.exit(1)
        logger.info(f"✓ Cloud-init ISO: {args.iso}")
        return

    files = {
        'user-data': generate_cloud_init_config(
            username=settings['username'],
            hostname=args.hostname,
            ssh_keys=settings['ssh_keys'],
            password=settings['password'],
            domain=settings['domain'],
            timezone=settings['timezone'],
            postinstall_script=settings['postinstall_script']
        ),
        'meta-data': generate_meta_data(instance_id, args.hostname),
        'network-config': generate_network_config(
            ip_address=settings['ip_address'],
            gateway=settings['gateway'],
            dns_servers=settings['dns_servers'],
            domain=settings['domain']
        ),
    }
    for filename, content in files.items():
        _write_output(content, os.path.join(args.output_dir, filename))


def handle_postinstall(args):
    """Handle generate postinstall command"""
    config = load_config_or_exit(args.config)

    try:
        script = render_postinstall_script(
            username=args.username or config.get_default_username(),
            timezone=config.get_timezone(),
            **postinstall_options(config.get_postinstall())
        )
    except ValueError as e:
        logger.error(f"Invalid postinstall settings: {e}")
        sys.exit(1)

    _write_output(script, args.output, executable=True)


def handle_guest_diagnostic(args):
    """Handle generate guest-diagnostic command"""
    _write_output(render_guest_diagnostic_script(), args.output, executable=True)


def handle_password_hash(args):
    """Handle generate password-hash command"""
    try:
        plain_password = getpass.getpass("Enter password: ")
        if not plain_password:
            logger.error("Password cannot be empty")
            sys.exit(1)
        confirm_password = getpass.getpass("Confirm password: ")
        if plain_password != confirm_password:
            logger.error("Passwords do not match")
            sys.exit(1)
    except (KeyboardInterrupt, EOFError):
        logger.error("\nPassword input cancelled")
        sys.exit(1)

    print(encrypt_password(plain_password))
