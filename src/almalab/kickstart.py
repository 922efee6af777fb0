#!/usr/bin/env python3
"""
Kickstart Generation

Render AlmaLinux kickstart files, validate them, and build the kernel
arguments and Packer boot commands that point anaconda at them.
"""

import ipaddress
import re
from typing import List, Optional

KS_FILENAME = 'ks.cfg'
OEMDRV_LABEL = 'OEMDRV'
PACKER_HTTP_KS = 'http://{{ .HTTPIP }}:{{ .HTTPPort }}/ks.cfg'

# Directives anaconda needs for an unattended install
REQUIRED_DIRECTIVES = ('lang', 'keyboard', 'timezone', 'rootpw', 'bootloader')
PARTITION_DIRECTIVES = ('autopart', 'part', 'logvol', 'reqpart')
SECTION_KEYWORDS = ('%packages', '%post', '%pre', '%pre-install', '%onerror', '%addon', '%anaconda')

BASE_PACKAGES = ['@^minimal-environment', 'hyperv-daemons', 'openssh-server', 'chrony']

# Restrict cloud-init to the NoCloud seed ISO so it does not search other datasources
NOCLOUD_DATASOURCE_CFG = """# Written by kickstart: only look for a NoCloud seed
datasource_list: [ NoCloud, None ]
"""

POSTINSTALL_UNIT = """[Unit]
Description=Lab post-installation script
After=network-online.target
Wants=network-online.target
ConditionPathExists=!/opt/lab/.postinstall-completed

[Service]
Type=oneshot
ExecStart=/opt/lab/postinstall.sh
TimeoutStartSec=0

[Install]
WantedBy=multi-user.target
"""


def netmask_from_prefix(prefix: int) -> str:
    """Convert a prefix length (24) to a dotted netmask (255.255.255.0)"""
    return str(ipaddress.IPv4Network(f"0.0.0.0/{prefix}").netmask)


def _network_line(hostname: str, ip_address: Optional[str], gateway: Optional[str],
                  dns_servers: Optional[List[str]], domain: Optional[str]) -> str:
    fqdn = f"{hostname}.{domain}" if domain else hostname
    if not ip_address:
        return f"network --bootproto=dhcp --device=link --activate --onboot=yes --hostname={fqdn}"

    interface = ipaddress.ip_interface(ip_address)
    if not gateway:
        gateway = str(interface.network.network_address + 1)
    line = (f"network --bootproto=static --device=link --activate --onboot=yes "
            f"--ip={interface.ip} --netmask={netmask_from_prefix(interface.network.prefixlen)} "
            f"--gateway={gateway}")
    if dns_servers:
        line += f" --nameserver={','.join(dns_servers)}"
    return line + f" --hostname={fqdn}"


def generate_kickstart(
    hostname: str,
    root_password: str,
    username: Optional[str] = None,
    user_password: Optional[str] = None,
    ssh_keys: Optional[List[str]] = None,
    ip_address: Optional[str] = None,
    gateway: Optional[str] = None,
    dns_servers: Optional[List[str]] = None,
    domain: Optional[str] = None,
    timezone: str = 'UTC',
    lang: str = 'en_US.UTF-8',
    keyboard: str = 'us',
    packages: Optional[List[str]] = None,
    install_cloud_init: bool = False,
    postinstall_script: Optional[str] = None
) -> str:
    """
    Generate an AlmaLinux kickstart file

    Args:
        hostname: Short hostname
        root_password: Encrypted root password hash ($6$...)
        username: Optional admin user (member of wheel)
        user_password: Encrypted password hash for the admin user
        ssh_keys: SSH public keys for the admin user
        ip_address: Static address in CIDR notation, None for DHCP
        gateway: Default gateway (derived as .1 of the subnet when omitted)
        dns_servers: DNS servers for static configuration
        domain: DNS domain, used for the FQDN
        timezone: Timezone name
        lang: System language
        keyboard: Keyboard layout
        packages: Additional packages for %packages
        install_cloud_init: Install cloud-init and limit it to the NoCloud datasource
        postinstall_script: Bash script embedded in %post and run once at the end of install

    Returns:
        Kickstart file content

    Raises:
        ValueError for unencrypted passwords
    """
    if not str(root_password).startswith('$'):
        raise ValueError("root_password must be an encrypted hash ($6$...)")
    if user_password and not str(user_password).startswith('$'):
        raise ValueError("user_password must be an encrypted hash ($6$...)")
    lines = [
        f"# Kickstart for {hostname}",
        "text",
        "cdrom",
        f"lang {lang}",
        f"keyboard --xlayouts='{keyboard}'",
        f"timezone {timezone} --utc",
        _network_line(hostname, ip_address, gateway, dns_servers, domain),
        "",
        f"rootpw --iscrypted {root_password}",
    ]

    if username:
        user_line = f"user --name={username} --groups=wheel"
        if user_password:
            user_line += f" --iscrypted --password={user_password}"
        else:
            user_line += " --lock"
        lines.append(user_line)
        for key in ssh_keys or []:
            lines.append(f'sshkey --username={username} "{key}"')

    lines.extend([
        "",
        # Further services are opened by the post-install script
        "firewall --enabled --service=ssh",
        "selinux --enforcing",
        "firstboot --disable",
        "skipx",
        "",
        "zerombr",
        "clearpart --all --initlabel",
        "autopart --type=lvm",
        "bootloader --append=\"console=tty0 console=ttyS0,115200n8\"",
        "",
        "%packages",
    ])

    package_list = list(BASE_PACKAGES)
    if install_cloud_init:
        package_list.extend(['cloud-init', 'cloud-utils-growpart'])
    for package in packages or []:
        if package not in package_list:
            package_list.append(package)
    lines.extend(package_list)
    lines.append("%end")
    lines.append("")

    post = [
        "%post --log=/root/ks-post.log",
        "systemctl enable hypervkvpd hypervvssd",
    ]
    if username:
        post.append(f"echo '{username} ALL=(ALL) NOPASSWD:ALL' > /etc/sudoers.d/{username}")
        post.append(f"chmod 440 /etc/sudoers.d/{username}")
    if install_cloud_init:
        post.append("mkdir -p /etc/cloud/cloud.cfg.d")
        post.append("cat > /etc/cloud/cloud.cfg.d/90_nocloud.cfg << 'EOF'")
        post.append(NOCLOUD_DATASOURCE_CFG.rstrip('\n'))
        post.append("EOF")
        post.append("systemctl enable cloud-init-local cloud-init cloud-config cloud-final")
    if postinstall_script:
        post.append("mkdir -p /opt/lab")
        post.append("cat > /opt/lab/postinstall.sh << 'POSTINSTALL_EOF'")
        post.append(postinstall_script.rstrip('\n'))
        post.append("POSTINSTALL_EOF")
        post.append("chmod 755 /opt/lab/postinstall.sh")
        # Services cannot be restarted inside the installer chroot; run on first boot instead
        post.append("cat > /etc/systemd/system/lab-postinstall.service << 'EOF'")
        post.append(POSTINSTALL_UNIT.rstrip('\n'))
        post.append("EOF")
        post.append("systemctl enable lab-postinstall.service")
    post.append("%end")

    lines.extend(post)
    lines.append("")
    lines.append("reboot --eject")

    return "\n".join(lines) + "\n"


def validate_kickstart(text: str) -> List[str]:
    """
    Check a kickstart file for common problems

    Args:
        text: Kickstart file content

    Returns:
        List of problem descriptions (empty if the file looks valid)
    """
    problems = []
    directives = set()
    open_section = None
    open_line = 0

    for number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith('#'):
            continue

        keyword = line.split()[0]
        if keyword == '%end':
            if open_section is None:
                problems.append(f"line {number}: %end without an open section")
            open_section = None
            continue
        if keyword in SECTION_KEYWORDS:
            if open_section is not None:
                problems.append(f"line {number}: {keyword} starts before {open_section} (line {open_line}) is closed")
            open_section = keyword
            open_line = number
            continue
        if open_section is not None:
            continue

        directives.add(keyword)
        if keyword == 'rootpw' or (keyword == 'user' and '--password' in line):
            if '--iscrypted' not in line and '--lock' not in line:
                problems.append(f"line {number}: {keyword} password is not encrypted (use --iscrypted)")

    if open_section is not None:
        problems.append(f"{open_section} (line {open_line}) is missing %end")

    for directive in REQUIRED_DIRECTIVES:
        if directive not in directives:
            problems.append(f"missing required directive: {directive}")

    if not directives.intersection(PARTITION_DIRECTIVES):
        problems.append("missing partitioning directive (autopart, part or logvol)")

    if not re.search(r'^\s*%packages\b', text, re.MULTILINE):
        problems.append("missing %packages section")

    return problems


def ks_location_for(method: str, label: str = OEMDRV_LABEL, filename: str = KS_FILENAME,
                    url: Optional[str] = None) -> str:
    """
    Build the inst.ks location for an injection method

    Args:
        method: 'oemdrv' (seed ISO), 'http' (Packer HTTP server) or 'url'
        label: Volume label of the seed ISO
        filename: Kickstart file name on the volume / server
        url: Explicit kickstart URL for method 'url'

    Returns:
        Value for the inst.ks kernel argument
    """
    if method == 'oemdrv':
        return f"hd:LABEL={label}:/{filename}"
    if method == 'http':
        return PACKER_HTTP_KS.replace(KS_FILENAME, filename)
    if method == 'url':
        if not url:
            raise ValueError("method 'url' requires a url")
        return url
    raise ValueError(f"Unknown kickstart method: {method}")


def kernel_boot_args(ks_location: str, text_mode: bool = True, extra: Optional[List[str]] = None) -> str:
    """Kernel command line arguments that start an automated install"""
    args = [f"inst.ks={ks_location}"]
    if text_mode:
        args.append("inst.text")
    args.extend(extra or [])
    return " ".join(args)


def packer_boot_command(generation: int, boot_args: str) -> List[str]:
    """
    Keystrokes that add boot_args to the installer's default menu entry

    Generation 2 VMs boot the ISO through GRUB (UEFI): select "Install",
    edit it with 'e', append to the linuxefi line and boot with Ctrl-X.
    Generation 1 VMs boot through isolinux (BIOS): select "Install" and
    append to the kernel options with <tab>.
    """
    if generation == 2:
        return [
            "<wait><up><wait>",
            "e<wait>",
            "<down><down><end><wait>",
            f" {boot_args}",
            "<leftCtrlOn>x<leftCtrlOff>",
        ]
    if generation == 1:
        return [
            "<wait><up><wait>",
            "<tab><wait>",
            f" {boot_args}",
            "<enter>",
        ]
    raise ValueError(f"Generation must be 1 or 2, got {generation}")
