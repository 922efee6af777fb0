"""Lab network commands (switch, NAT, host firewall)"""

import sys

from almalab.lab_utils import load_config_or_exit, logger, HyperVError
from almalab.hyperv import (
    connect_hyperv,
    default_firewall_rules,
    ensure_firewall_rules,
    ensure_nat,
    ensure_switch,
    get_switch,
    FIREWALL_GROUP,
    remove_firewall_rules,
    remove_nat,
    remove_switch,
)
from almalab.powershell import ps_quote, run_powershell_list


def setup_setup_parser(parser):
    """Setup argument parser for network setup command"""
    parser.add_argument('--no-firewall', action='store_true',
                        help='Do not create host firewall rules')


def setup_teardown_parser(parser):
    """Setup argument parser for network teardown command"""
    parser.add_argument('-f', '--force', action='store_true',
                        help='Remove without confirmation')


def setup_status_parser(parser):
    """Setup argument parser for network status command"""
    pass


def _connect(config) -> str:
    try:
        powershell = connect_hyperv(config)
    except HyperVError as e:
        logger.error(str(e))
        sys.exit(1)
    logger.info("✓ Connected to Hyper-V")
    return powershell


def handle_setup(args):
    """Handle network setup command"""
    config = load_config_or_exit(args.config)
    powershell = _connect(config)

    switch_name = config.get_switch_name()
    switch_type = config.get_switch_type()

    try:
        ensure_switch(powershell, switch_name, switch_type, config.get_external_adapter())

        # NAT only applies to the host-side vNIC of an Internal switch
        if switch_type == 'Internal':
            ensure_nat(powershell, switch_name, config.get_nat_name(), config.get_nat_subnet(), config.get_host_ip())
        else:
            logger.info(f"→ Skipping NAT for {switch_type} switch")

        if not args.no_firewall:
            rules = default_firewall_rules(config.get_nat_subnet(), config.get_packer_http_ports())
            created = ensure_firewall_rules(powershell, rules)
            logger.info(f"✓ Firewall rules: {created} created, {len(rules) - created} already present")
    except HyperVError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info("✓ Lab network ready")


def handle_teardown(args):
    """Handle network teardown command"""
    config = load_config_or_exit(args.config)

    switch_name = config.get_switch_name()
    if not args.force:
        response = input(f"Remove switch '{switch_name}', NAT '{config.get_nat_name()}' "
                         "and lab firewall rules? [y/N]: ").strip().lower()
        if response != 'y':
            logger.info("→ Teardown cancelled")
            return

    powershell = _connect(config)

    results = [
        remove_firewall_rules(powershell),
        remove_nat(powershell, config.get_nat_name()),
        remove_switch(powershell, switch_name),
    ]
    if not all(results):
        logger.error("Lab network teardown incomplete")
        sys.exit(1)
    logger.info("✓ Lab network removed")


def handle_status(args):
    """Handle network status command"""
    config = load_config_or_exit(args.config)
    powershell = _connect(config)

    switch_name = config.get_switch_name()
    nat_name = config.get_nat_name()

    try:
        switch = get_switch(powershell, switch_name)
        nat = run_powershell_list(
            f"Get-NetNat -Name {ps_quote(nat_name)} -ErrorAction SilentlyContinue | "
            "Select-Object Name, InternalIPInterfaceAddressPrefix",
            powershell=powershell
        )
        rules = run_powershell_list(
            f"Get-NetFirewallRule -Group {ps_quote(FIREWALL_GROUP)} -ErrorAction SilentlyContinue | "
            "Select-Object Name, @{Name='Enabled';Expression={$_.Enabled.ToString()}}",
            powershell=powershell
        )
    except HyperVError as e:
        logger.error(str(e))
        sys.exit(1)

    print("\n" + "=" * 80)
    print("Lab network:")
    print("=" * 80)
    if switch:
        print(f"  Switch:    {switch['name']} ({switch['type']})")
    else:
        print(f"  Switch:    {switch_name} (missing)")
    if nat:
        print(f"  NAT:       {nat[0].get('Name')} ({nat[0].get('InternalIPInterfaceAddressPrefix')})")
    else:
        print(f"  NAT:       {nat_name} (missing)")
    print(f"  Host IP:   {config.get_host_ip()}")
    print(f"  Firewall:  {len(rules)} rule(s)")
    for rule in rules:
        print(f"             - {rule.get('Name')} (enabled: {rule.get('Enabled')})")
    print("=" * 80)
