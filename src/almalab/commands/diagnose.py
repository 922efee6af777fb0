"""VM diagnostics command"""

import sys

from almalab.lab_utils import load_config_or_exit, logger, validate_vm_name, HyperVError
from almalab.diagnose import (
    ERROR,
    check_seed_iso,
    diagnose_vm,
    format_findings,
    render_guest_diagnostic_script,
)


def setup_diagnose_parser(parser):
    """Setup argument parser for diagnose command"""
    parser.add_argument('vm', nargs='?',
                        help='VM name to check')
    parser.add_argument('--seed-iso',
                        help='Inspect a local seed ISO (cidata or OEMDRV) instead of a VM')
    parser.add_argument('--guest-script', action='store_true',
                        help='Print the bash script to run inside the guest and exit')


def handle_diagnose(args):
    """Handle diagnose command"""
    if args.guest_script:
        sys.stdout.write(render_guest_diagnostic_script())
        return

    if args.seed_iso:
        findings = check_seed_iso(args.seed_iso)
        title = f"Seed ISO: {args.seed_iso}"
    elif args.vm:
        if not validate_vm_name(args.vm):
            logger.error(f"Invalid VM name '{args.vm}': use letters, digits and dashes (max 63 characters)")
            sys.exit(1)
        config = load_config_or_exit(args.config)
        try:
            findings = diagnose_vm(config, args.vm)
        except HyperVError as e:
            logger.error(str(e))
            sys.exit(1)
        title = f"VM: {args.vm}"
    else:
        logger.error("Give a VM name, --seed-iso or --guest-script")
        sys.exit(1)

    print("\n" + "=" * 80)
    print(f"Diagnostics for {title}")
    print("=" * 80)
    print(format_findings(findings))
    print("=" * 80)

    if any(item['level'] == ERROR for item in findings):
        print("\nFor problems inside the guest, run: almalab generate guest-diagnostic -o diagnose.sh")
        sys.exit(1)
