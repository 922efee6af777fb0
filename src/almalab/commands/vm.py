"""VM management commands"""

import getpass
import sys

from almalab.lab_utils import (
    ALMA_RELEASES,
    load_config_or_exit,
    logger,
    encrypt_password,
    read_ssh_key,
    validate_vm_name,
    HyperVError,
    LabConfigError,
    VMCreationError,
    VMDeletionError,
)
from almalab import hyperv
from almalab.vm_create import create_lab_vm
from almalab.vm_delete import delete_lab_vm


def setup_create_parser(parser):
    """Setup argument parser for VM create command"""
    # Required arguments
    parser.add_argument('vm',
                        help='VM name, also used as the guest hostname (required)')

    # Hardware
    parser.add_argument('-g', '--generation', type=int, choices=[1, 2],
                        help='Hyper-V generation: 1 (BIOS) or 2 (UEFI) (default: from config)')
    parser.add_argument('-c', '--cores', type=int,
                        help='Number of CPU cores (default: from config)')
    parser.add_argument('-m', '--memory', type=int,
                        help='Memory in MB (default: from config)')
    parser.add_argument('-b', '--bootsize', dest='disk_size', type=int,
                        help='Disk size in GB (default: from config)')

    # Provisioning
    parser.add_argument('--provisioning', choices=['kickstart', 'cloud-init'],
                        help='Install from ISO with kickstart, or clone the template VHDX with cloud-init '
                             '(default: from config)')
    parser.add_argument('-r', '--release', choices=sorted(ALMA_RELEASES.keys()),
                        help='AlmaLinux release for kickstart installs (default: from config)')
    parser.add_argument('--flavour', choices=['boot', 'minimal', 'dvd'],
                        help='ISO flavour for kickstart installs (default: from config)')
    parser.add_argument('--iso', dest='iso_path',
                        help='Installation ISO path (overrides release/flavour lookup)')
    parser.add_argument('--template', dest='template_vhdx',
                        help='Template VHDX for cloud-init VMs (default: from config)')
    parser.add_argument('--ip', dest='ip_address',
                        help="Static IP address in CIDR notation, or 'dhcp' (default: from config)")

    # Authentication
    parser.add_argument('-u', '--username',
                        help='Primary user to create (default: from config)')
    parser.add_argument('-k', '--keyfile', dest='ssh_key_file',
                        help='SSH public key file path (default: from config)')
    parser.add_argument('--password',
                        help='Encrypted password hash for the user (SHA-512 format: $6$rounds=4096$salt$hash)')
    parser.add_argument('--plain-password', action='store_true',
                        help='Prompt for plaintext password and encrypt it (more secure than --password)')

    # Optional features
    parser.add_argument('--no-postinstall', action='store_true',
                        help='Do not run the lab post-install script')
    parser.add_argument('--no-start', action='store_true',
                        help='Do not start the VM after creation')
    parser.add_argument('--no-wait', action='store_true',
                        help='Do not wait for the VM to report an IP address')


def setup_delete_parser(parser):
    """Setup argument parser for VM delete command"""
    parser.add_argument('vm',
                        help='VM name to delete')
    parser.add_argument('-f', '--force', action='store_true',
                        help='Force delete without confirmation')


def setup_start_parser(parser):
    """Setup argument parser for VM start command"""
    parser.add_argument('vm',
                        help='VM name to start')


def setup_stop_parser(parser):
    """Setup argument parser for VM stop command"""
    parser.add_argument('vm',
                        help='VM name to stop')
    parser.add_argument('--turn-off', action='store_true',
                        help='Power off immediately instead of a guest shutdown')


def setup_list_parser(parser):
    """Setup argument parser for VM list command"""
    parser.add_argument('-s', '--sort', choices=['name', 'state'], default='name',
                        help='Sort by name or state (default: name)')
    parser.add_argument('--state',
                        help='Only show VMs in this state (e.g., running, off)')


def setup_ip_parser(parser):
    """Setup argument parser for VM ip command"""
    parser.add_argument('vm',
                        help='VM name')
    parser.add_argument('-w', '--wait', type=int, default=0,
                        help='Seconds to wait for an address (default: 0, no waiting)')


def _check_vm_name(name):
    """Exit on names Hyper-V would expand as wildcards"""
    if not validate_vm_name(name):
        logger.error(f"Invalid VM name '{name}': use letters, digits and dashes (max 63 characters)")
        sys.exit(1)


def _connect(config) -> str:
    try:
        powershell = hyperv.connect_hyperv(config)
    except HyperVError as e:
        logger.error(str(e))
        sys.exit(1)
    logger.info("✓ Connected to Hyper-V")
    return powershell


def _password_from_args(args):
    """Return the encrypted password from --password or --plain-password, or None"""
    if args.plain_password:
        # Prompt for plaintext password and encrypt it
        try:
            plain_password = getpass.getpass("Enter password for user: ")
            if not plain_password:
                logger.error("Password cannot be empty")
                sys.exit(1)
            confirm_password = getpass.getpass("Confirm password: ")
            if plain_password != confirm_password:
                logger.error("Passwords do not match")
                sys.exit(1)
            encrypted_password = encrypt_password(plain_password)
            logger.info("✓ Password encrypted successfully")
            return encrypted_password
        except (KeyboardInterrupt, EOFError):
            logger.error("\nPassword input cancelled")
            sys.exit(1)
    if args.password:
        # Validate that the password is in encrypted format
        if not args.password.startswith('$6$'):
            logger.error("Password must be an encrypted hash (SHA-512 format: $6$rounds=4096$salt$hash)")
            logger.error("Use --plain-password to provide a plaintext password, "
                         "or generate an encrypted hash with: almalab generate password-hash")
            sys.exit(1)
        return args.password
    return None


def handle_create(args):
    """Handle VM create command"""
    config = load_config_or_exit(args.config)

    # Read SSH key if provided, otherwise create_lab_vm falls back to the config key
    ssh_keys = None
    if args.ssh_key_file:
        try:
            ssh_keys = [read_ssh_key(args.ssh_key_file)]
        except (FileNotFoundError, ValueError, IOError) as e:
            logger.error(str(e))
            sys.exit(1)

    encrypted_password = _password_from_args(args)

    try:
        generation = args.generation or config.get_default_generation()
        provisioning = args.provisioning or config.get_provisioning()
    except LabConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    powershell = _connect(config)

    # Display configuration
    print("\n" + "=" * 80)
    print("VM Configuration:")
    print("=" * 80)
    print(f"  Name:         {args.vm}")
    print(f"  Generation:   {generation}")
    print(f"  Provisioning: {provisioning}")
    print(f"  Cores:        {args.cores or config.get_default_cores()}")
    print(f"  Memory:       {args.memory or config.get_default_memory()} MB")
    print(f"  Disk:         {args.disk_size or config.get_default_disk_size()} GB")
    print(f"  User:         {args.username or config.get_default_username()}")
    print(f"  Network:      {args.ip_address or config.get_network_ipaddress()}")
    print(f"  Nested:       {'Yes' if config.get_nested_virtualization() else 'No'}")
    print(f"  Post-install: {'No' if args.no_postinstall else 'Yes'}")
    print("=" * 80 + "\n")

    try:
        result = create_lab_vm(
            config,
            args.vm,
            generation=generation,
            cores=args.cores,
            memory=args.memory,
            disk_size=args.disk_size,
            provisioning=provisioning,
            release=args.release,
            flavour=args.flavour,
            iso_path=args.iso_path,
            template_vhdx=args.template_vhdx,
            username=args.username,
            ssh_keys=ssh_keys,
            password=encrypted_password,
            ip_address=args.ip_address,
            postinstall=not args.no_postinstall,
            start=not args.no_start,
            wait_for_ip=not args.no_wait,
            powershell=powershell
        )
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)
    except (VMCreationError, HyperVError) as e:
        logger.error(str(e))
        sys.exit(1)

    start_failed = not args.no_start and not result['started']

    print("\n" + "=" * 80)
    if start_failed:
        logger.error(f"VM '{result['name']}' was created but did not start")
    else:
        logger.info("✓ VM successfully created!")
    print("=" * 80)
    print(f"  Name:         {result['name']}")
    print(f"  Generation:   {result['generation']}")
    print(f"  Provisioning: {result['provisioning']}")
    print(f"  Disk:         {result['vhd']}")
    print(f"  Seed ISO:     {result['seed_iso']}")
    if result['install_iso']:
        print(f"  Install ISO:  {result['install_iso']}")
    if result['ip_address']:
        print(f"  IP:           {result['ip_address']}")
    if start_failed:
        print("  Status:       Stopped (start failed)")
    else:
        print(f"  Status:       {'Started' if result['started'] else 'Stopped'}")
    print("=" * 80)
    if result['provisioning'] == 'kickstart':
        print("\nNote: The unattended install takes several minutes; the VM reboots when done.")
    else:
        print("\nNote: Wait a few minutes for cloud-init to complete initial setup.")
    print(f"      If the VM does not come up, run: almalab diagnose {result['name']}")
    print("=" * 80 + "\n")

    if start_failed:
        sys.exit(1)


def handle_delete(args):
    """Handle VM delete command"""
    _check_vm_name(args.vm)
    config = load_config_or_exit(args.config)
    powershell = _connect(config)

    try:
        deleted = delete_lab_vm(config, args.vm, force=args.force, powershell=powershell)
    except VMDeletionError as e:
        logger.error(str(e))
        sys.exit(1)

    if deleted:
        logger.info("✓ Deletion completed")
    else:
        logger.info("→ No VMs were deleted")


def handle_start(args):
    """Handle VM start command"""
    _check_vm_name(args.vm)
    config = load_config_or_exit(args.config)
    powershell = _connect(config)

    vm = hyperv.get_vm(powershell, args.vm)
    if not vm:
        logger.error(f"VM '{args.vm}' not found")
        sys.exit(1)

    logger.info(f"→ VM '{args.vm}' (state: {vm['state']})")
    if vm['state'] == 'running':
        logger.info(f"→ VM '{args.vm}' is already running")
        return

    try:
        logger.info(f"→ Starting VM '{args.vm}'...")
        hyperv.start_vm(powershell, args.vm)
    except HyperVError as e:
        logger.error(f"Failed to start VM '{args.vm}': {e}")
        sys.exit(1)

    if hyperv.wait_for_vm_state(powershell, args.vm, 'running', max_wait=60):
        logger.info(f"✓ VM '{args.vm}' started successfully")
    else:
        logger.error(f"VM '{args.vm}' did not start within timeout")
        sys.exit(1)


def handle_stop(args):
    """Handle VM stop command"""
    _check_vm_name(args.vm)
    config = load_config_or_exit(args.config)
    powershell = _connect(config)

    vm = hyperv.get_vm(powershell, args.vm)
    if not vm:
        logger.error(f"VM '{args.vm}' not found")
        sys.exit(1)

    logger.info(f"→ VM '{args.vm}' (state: {vm['state']})")
    if vm['state'] == 'off':
        logger.info(f"→ VM '{args.vm}' is already stopped")
        return

    try:
        logger.info(f"→ Stopping VM '{args.vm}'...")
        hyperv.stop_vm(powershell, args.vm, turn_off=args.turn_off)
    except HyperVError as e:
        logger.error(f"Failed to stop VM '{args.vm}': {e}")
        sys.exit(1)

    if hyperv.wait_for_vm_state(powershell, args.vm, 'off', max_wait=120):
        logger.info(f"✓ VM '{args.vm}' stopped successfully")
    else:
        logger.error(f"VM '{args.vm}' did not stop within timeout (try --turn-off)")
        sys.exit(1)


def handle_list(args):
    """Handle VM list command"""
    config = load_config_or_exit(args.config)
    powershell = _connect(config)

    try:
        vms = hyperv.list_vms(powershell)
    except HyperVError as e:
        logger.error(str(e))
        sys.exit(1)

    if args.state:
        vms = [vm for vm in vms if vm['state'] == args.state.lower()]

    if not vms:
        print("\nNo VMs found")
        return

    # Print header
    print("\n" + "=" * 100)
    print("VMs:")
    print("=" * 100)
    print(f"{'Name':<30} {'State':<12} {'Gen':<5} {'Cores':<7} {'Memory':<12} {'Uptime':<20}")
    print("-" * 100)

    if args.sort == 'state':
        vms_sorted = sorted(vms, key=lambda x: (x['state'], x['name'].lower()))
    else:
        vms_sorted = sorted(vms, key=lambda x: x['name'].lower())

    for vm in vms_sorted:
        memory = f"{vm['memory']} MB" if vm['memory'] else '-'
        print(f"{vm['name']:<30} {vm['state']:<12} {str(vm['generation'] or '-'):<5} {str(vm['cores'] or '-'):<7} "
              f"{memory:<12} {vm['uptime'] or '-':<20}")

    print("=" * 100)
    print(f"\nTotal: {len(vms)} VM(s)")


def handle_ip(args):
    """Handle VM ip command"""
    _check_vm_name(args.vm)
    config = load_config_or_exit(args.config)
    powershell = _connect(config)

    vm = hyperv.get_vm(powershell, args.vm)
    if not vm:
        logger.error(f"VM '{args.vm}' not found")
        sys.exit(1)

    if args.wait:
        address = hyperv.wait_for_vm_ip(powershell, args.vm, max_wait=args.wait)
        addresses = [address] if address else []
    else:
        addresses = hyperv.get_vm_ip_addresses(powershell, args.vm)

    if not addresses:
        logger.error(f"VM '{args.vm}' reports no IPv4 address (is hyperv-daemons running in the guest?)")
        sys.exit(1)

    for address in addresses:
        print(address)
