#!/usr/bin/env python3
"""
AlmaLab CLI Entry Point

Main CLI application that provides commands for ISO downloads, Hyper-V
networking, VM management, artifact generation, Packer builds and
diagnostics.
"""

import argparse
import sys

from almalab.lab_utils import setup_logging
from almalab.commands import iso, network, vm, generate, packer, diagnose


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='almalab',
        description='AlmaLinux nested virtualization lab on Hyper-V',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Installation media
  almalab iso download --release alma9 --flavour minimal
  almalab iso list

  # Lab network (switch, NAT, host firewall rules)
  almalab network setup
  almalab network status

  # VM operations
  almalab vm create lab01 -k ~/.ssh/id_ed25519.pub
  almalab vm create lab02 --provisioning cloud-init --ip 192.168.100.12/24
  almalab vm list
  almalab vm ip lab01
  almalab vm delete lab01

  # Artifacts
  almalab generate kickstart lab01 -o ks.cfg
  almalab generate password-hash

  # Template image
  almalab packer build --generation 2

  # Troubleshooting
  almalab diagnose lab01
        '''
    )
    parser.add_argument('--config', default=None,
                        help='Path to configuration file (default: searches ./almalab.yaml, '
                             '~/.config/almalab/almalab.yaml, ~/.almalab.yaml)')
    parser.add_argument('--debug', action='store_true',
                        help='Show debug output (PowerShell commands, Packer details)')
    parser.add_argument('--log-file',
                        help='Also write log messages to this file')

    # Create subparsers for commands
    subparsers = parser.add_subparsers(dest='command', help='Command to execute', required=True)

    # ISO command
    iso_parser = subparsers.add_parser('iso', help='Installation ISO commands')
    iso_subparsers = iso_parser.add_subparsers(dest='action', help='ISO action', required=True)
    iso.setup_download_parser(iso_subparsers.add_parser('download', help='Download and verify an AlmaLinux ISO'))
    iso.setup_list_parser(iso_subparsers.add_parser('list', help='List downloaded ISOs'))
    iso.setup_verify_parser(iso_subparsers.add_parser('verify', help='Verify a downloaded ISO against CHECKSUM'))

    # Network command
    network_parser = subparsers.add_parser('network', help='Lab switch, NAT and firewall commands')
    network_subparsers = network_parser.add_subparsers(dest='action', help='Network action', required=True)
    network.setup_setup_parser(network_subparsers.add_parser('setup', help='Create switch, NAT and firewall rules'))
    network.setup_teardown_parser(network_subparsers.add_parser('teardown', help='Remove switch, NAT and firewall rules'))
    network.setup_status_parser(network_subparsers.add_parser('status', help='Show lab network status'))

    # VM command
    vm_parser = subparsers.add_parser('vm', help='VM management commands')
    vm_subparsers = vm_parser.add_subparsers(dest='action', help='VM action', required=True)
    vm.setup_create_parser(vm_subparsers.add_parser('create', help='Create a new VM'))
    vm.setup_delete_parser(vm_subparsers.add_parser('delete', help='Delete a VM'))
    vm.setup_start_parser(vm_subparsers.add_parser('start', help='Start a VM'))
    vm.setup_stop_parser(vm_subparsers.add_parser('stop', help='Stop a VM'))
    vm.setup_list_parser(vm_subparsers.add_parser('list', help='List VMs'))
    vm.setup_ip_parser(vm_subparsers.add_parser('ip', help='Show IP addresses reported by a VM'))

    # Generate command
    generate_parser = subparsers.add_parser('generate', help='Render configuration artifacts')
    generate_subparsers = generate_parser.add_subparsers(dest='action', help='Artifact', required=True)
    generate.setup_kickstart_parser(generate_subparsers.add_parser('kickstart', help='Render a kickstart file'))
    generate.setup_cloud_init_parser(generate_subparsers.add_parser('cloud-init', help='Render cloud-init seed files'))
    generate.setup_postinstall_parser(generate_subparsers.add_parser('postinstall', help='Render the post-install script'))
    generate.setup_guest_diagnostic_parser(
        generate_subparsers.add_parser('guest-diagnostic', help='Render the in-guest cloud-init diagnostic script'))
    generate.setup_password_hash_parser(
        generate_subparsers.add_parser('password-hash', help='Encrypt a password for the config file'))

    # Packer command
    packer_parser = subparsers.add_parser('packer', help='Packer template commands')
    packer_subparsers = packer_parser.add_subparsers(dest='action', help='Packer action', required=True)
    packer.setup_render_parser(packer_subparsers.add_parser('render', help='Write template, ks.cfg and postinstall.sh'))
    packer.setup_validate_parser(packer_subparsers.add_parser('validate', help='Render and run packer validate'))
    packer.setup_build_parser(packer_subparsers.add_parser('build', help='Render and run packer build'))

    # Diagnose command
    diagnose_parser = subparsers.add_parser('diagnose', help='Check a VM for boot and provisioning problems')
    diagnose.setup_diagnose_parser(diagnose_parser)

    return parser


HANDLERS = {
    ('iso', 'download'): iso.handle_download,
    ('iso', 'list'): iso.handle_list,
    ('iso', 'verify'): iso.handle_verify,
    ('network', 'setup'): network.handle_setup,
    ('network', 'teardown'): network.handle_teardown,
    ('network', 'status'): network.handle_status,
    ('vm', 'create'): vm.handle_create,
    ('vm', 'delete'): vm.handle_delete,
    ('vm', 'start'): vm.handle_start,
    ('vm', 'stop'): vm.handle_stop,
    ('vm', 'list'): vm.handle_list,
    ('vm', 'ip'): vm.handle_ip,
    ('generate', 'kickstart'): generate.handle_kickstart,
    ('generate', 'cloud-init'): generate.handle_cloud_init,
    ('generate', 'postinstall'): generate.handle_postinstall,
    ('generate', 'guest-diagnostic'): generate.handle_guest_diagnostic,
    ('generate', 'password-hash'): generate.handle_password_hash,
    ('packer', 'render'): packer.handle_render,
    ('packer', 'validate'): packer.handle_validate,
    ('packer', 'build'): packer.handle_build,
    ('diagnose', None): diagnose.handle_diagnose,
}


def main(argv=None):
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.debug or args.log_file:
        setup_logging('DEBUG' if args.debug else 'INFO', args.log_file)

    handler = HANDLERS[(args.command, getattr(args, 'action', None))]

    # Execute the appropriate command
    try:
        handler(args)
    except KeyboardInterrupt:
        print("\n\nOperation cancelled by user")
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
