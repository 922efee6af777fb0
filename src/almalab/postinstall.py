#!/usr/bin/env python3
"""
Post-Installation Script

Render the bash script that turns a fresh AlmaLinux install into a lab VM:
packages, SSH, firewalld, lab user, git, Docker, aliases, MOTD and time sync.
The script is run by Packer's shell provisioner, by cloud-init (runcmd)
or by a first-boot unit written from the kickstart.
"""

import re
from typing import Dict, List, Optional

DEFAULT_PACKAGES = [
    'git', 'vim-enhanced', 'tmux', 'htop', 'tree', 'wget', 'curl', 'net-tools',
    'bind-utils', 'tcpdump', 'nmap-ncat', 'rsync', 'unzip', 'tar', 'python3',
    'python3-pip', 'ansible-core', 'sshpass', 'jq',
]
# Needs EPEL
MONITORING_PACKAGES = ['iotop', 'iftop', 'nethogs', 'glances']
DEFAULT_FIREWALL_SERVICES = ['ssh', 'http', 'https']
DEFAULT_FIREWALL_PORTS = ['8080/tcp', '3000/tcp']
DEFAULT_PIP_PACKAGES = ['requests', 'paramiko', 'pyyaml', 'jinja2', 'netaddr']
COMPLETION_MARKER = '/opt/lab/.postinstall-completed'
LOG_FILE = '/var/log/postinstall.log'

SHELL_ALIASES = """# Lab environment aliases
alias ll='ls -alF'
alias la='ls -A'
alias l='ls -CF'
alias grep='grep --color=auto'
alias h='history'
alias ..='cd ..'
alias ...='cd ../..'
alias df='df -h'
alias du='du -h'
alias free='free -h'
alias psg='ps aux | grep -v grep | grep -i -e VSZ -e'
alias ports='ss -tulanp'

# Docker aliases
alias dps='docker ps'
alias dpsa='docker ps -a'
alias di='docker images'
alias dlog='docker logs'
alias dexec='docker exec -it'

# Git aliases
alias gs='git status'
alias ga='git add'
alias gc='git commit'
alias gp='git push'
alias gl='git log --oneline'
alias gd='git diff'
"""

LOGROTATE_CONFIG = """/opt/lab/logs/*.log {{
    daily
    missingok
    rotate 7
    compress
    notifempty
    create 0644 {username} {username}
}}
"""

SAFE_TOKEN_RE = re.compile(r'^[A-Za-z0-9@._+/:=-]+$')


def _check_tokens(kind: str, values: List[str]):
    for value in values:
        if not SAFE_TOKEN_RE.match(str(value)):
            raise ValueError(f"Invalid {kind}: {value!r}")


def _motd(docker: bool, nodejs: bool) -> str:
    lines = [
        "===============================================",
        "   AlmaLinux Nested Virtualization Lab VM",
        "===============================================",
        "Welcome to your lab environment!",
        "",
        "System Information:",
        "- OS: AlmaLinux (RHEL compatible)",
        "- Purpose: Nested virtualization lab",
    ]
    if docker:
        lines.append("- Docker: Installed and running")
    if nodejs:
        lines.append("- Node.js: Installed (LTS version)")
    lines.extend([
        "",
        "Useful Commands:",
        "- htop          # System monitor",
        "- systemctl     # Service management",
        "- firewall-cmd  # Firewall management",
        "- /opt/lab/scripts/sysinfo.sh",
        "===============================================",
    ])
    return "\n".join(lines) + "\n"


def _heredoc(path: str, content: str, marker: str = 'EOF') -> List[str]:
    return [f"cat > {path} << '{marker}'", content.rstrip('\n'), marker]


def render_postinstall_script(
    username: str = 'labuser',
    packages: Optional[List[str]] = None,
    firewall_services: Optional[List[str]] = None,
    firewall_ports: Optional[List[str]] = None,
    docker: bool = True,
    nodejs: bool = False,
    pip_packages: Optional[List[str]] = None,
    monitoring_tools: bool = True,
    timezone: str = 'UTC',
    git_name: str = 'Lab User',
    git_email: str = 'lab@example.com',
    update: bool = True
) -> str:
    """
    Render the post-installation bash script

    Args:
        username: Lab user (created locked if the installer did not create it)
        packages: Packages to install (default: DEFAULT_PACKAGES)
        firewall_services: firewalld services to open
        firewall_ports: firewalld ports to open ('8080/tcp')
        docker: Install Docker CE and add the lab user to the docker group
        nodejs: Install Node.js LTS from NodeSource
        pip_packages: Python packages installed with pip3
        monitoring_tools: Install iotop/iftop/nethogs/glances from EPEL
        timezone: Timezone set with timedatectl
        git_name: System-wide git user.name
        git_email: System-wide git user.email
        update: Run 'dnf update' first

    Returns:
        Bash script text

    Raises:
        ValueError if a name contains characters that are unsafe in the script
    """
    packages = list(DEFAULT_PACKAGES if packages is None else packages)
    services = list(DEFAULT_FIREWALL_SERVICES if firewall_services is None else firewall_services)
    ports = list(DEFAULT_FIREWALL_PORTS if firewall_ports is None else firewall_ports)
    pip_packages = list(DEFAULT_PIP_PACKAGES if pip_packages is None else pip_packages)

    _check_tokens('user name', [username])
    _check_tokens('package', packages + pip_packages)
    _check_tokens('firewall service', services)
    _check_tokens('firewall port', ports)
    _check_tokens('timezone', [timezone])
    if "'" in git_name or "'" in git_email:
        raise ValueError("git name and email must not contain single quotes")

    s = [
        "#!/bin/bash",
        "# Post-installation script for AlmaLinux lab VMs",
        "",
        "set -euo pipefail",
        "",
        f'LOG_FILE="{LOG_FILE}"',
        'exec > >(tee -a "$LOG_FILE") 2>&1',
        "",
        'echo "=========================================="',
        'echo "AlmaLinux VM Post-Installation Script"',
        'echo "Started: $(date)"',
        'echo "Hostname: $(hostname)"',
        'echo "=========================================="',
        "",
    ]

    if update:
        s += ['echo "Updating system packages..."', "dnf update -y", ""]

    s += [
        'echo "Installing EPEL repository..."',
        "if ! rpm -q epel-release &>/dev/null; then",
        "    dnf install -y epel-release",
        "fi",
        "",
    ]

    if packages:
        s += ['echo "Installing lab packages..."', "dnf install -y " + " ".join(packages), ""]

    s += [
        'echo "Configuring SSH..."',
        'SSH_CONFIG="/etc/ssh/sshd_config"',
        '[ -f "${SSH_CONFIG}.backup" ] || cp "$SSH_CONFIG" "${SSH_CONFIG}.backup"',
        "sed -i 's/^#\\?PubkeyAuthentication .*/PubkeyAuthentication yes/' \"$SSH_CONFIG\"",
        "sed -i 's/^#\\?PasswordAuthentication .*/PasswordAuthentication yes/' \"$SSH_CONFIG\"",
        "systemctl restart sshd",
        "",
        'echo "Configuring firewall..."',
        "if systemctl is-active --quiet firewalld; then",
    ]
    s += [f"    firewall-cmd --permanent --add-service={service}" for service in services]
    s += [f"    firewall-cmd --permanent --add-port={port}" for port in ports]
    s += ["    firewall-cmd --reload", "fi", ""]

    s += [
        f'if ! id "{username}" &>/dev/null; then',
        f'    echo "Creating lab user {username}..."',
        f"    useradd -m -s /bin/bash -G wheel {username}",
        f"    passwd -l {username}",
        "fi",
        f'echo "{username} ALL=(ALL) NOPASSWD:ALL" > /etc/sudoers.d/{username}',
        f"chmod 440 /etc/sudoers.d/{username}",
        "",
        f"for user in root {username}; do",
        '    USER_HOME=$(getent passwd "$user" | cut -d: -f6)',
        '    SSH_DIR="$USER_HOME/.ssh"',
        '    mkdir -p "$SSH_DIR"',
        '    chmod 700 "$SSH_DIR"',
        '    touch "$SSH_DIR/authorized_keys"',
        '    chmod 600 "$SSH_DIR/authorized_keys"',
        '    chown -R "$user:$user" "$SSH_DIR"',
        "done",
        "",
        'echo "Configuring Git..."',
        "if command -v git &>/dev/null; then",
        f"    git config --system user.name '{git_name}'",
        f"    git config --system user.email '{git_email}'",
        "    git config --system init.defaultBranch main",
        "    git config --system credential.helper 'cache --timeout=28800'",
        "fi",
        "",
    ]

    if docker:
        s += [
            'echo "Installing Docker..."',
            "dnf config-manager --add-repo=https://download.docker.com/linux/centos/docker-ce.repo",
            "dnf install -y docker-ce docker-ce-cli containerd.io docker-compose-plugin",
            "systemctl enable --now docker",
            f"usermod -aG docker {username}",
            "",
        ]

    if nodejs:
        s += [
            'echo "Installing Node.js..."',
            "curl -fsSL https://rpm.nodesource.com/setup_lts.x | bash -",
            "dnf install -y nodejs",
            "",
        ]

    if pip_packages:
        s += ['echo "Installing Python packages..."', "pip3 install " + " ".join(pip_packages), ""]

    if monitoring_tools:
        s += ['echo "Installing monitoring tools..."', "dnf install -y " + " ".join(MONITORING_PACKAGES), ""]

    s += ['echo "Setting up shell aliases..."']
    s += _heredoc("/etc/profile.d/lab_aliases.sh", SHELL_ALIASES)
    s += ["chmod 644 /etc/profile.d/lab_aliases.sh", ""]

    s += ['echo "Configuring MOTD..."']
    s += _heredoc("/etc/motd", _motd(docker, nodejs))
    s += [""]

    s += [
        'echo "Setting up project directories..."',
        "mkdir -p /opt/lab/scripts /opt/lab/configs /opt/lab/logs /opt/lab/projects",
    ]
    s += _heredoc("/opt/lab/scripts/sysinfo.sh", "\n".join([
        "#!/bin/bash",
        'echo "=== System Information ==="',
        'echo "Hostname: $(hostname)"',
        'echo "OS: $(cat /etc/redhat-release)"',
        'echo "Kernel: $(uname -r)"',
        'echo "Uptime: $(uptime)"',
        'echo "Memory: $(free -h | grep Mem)"',
        'echo "Disk Usage: $(df -h / | tail -1)"',
        "ip -brief addr show",
        'echo "=== End System Information ==="',
    ]))
    s += ["chmod 755 /opt/lab/scripts/sysinfo.sh"]
    s += _heredoc("/etc/logrotate.d/lab", LOGROTATE_CONFIG.format(username=username))
    s += [f"chown -R {username}:{username} /opt/lab", ""]

    s += [
        f'echo "Setting timezone to {timezone}..."',
        f"timedatectl set-timezone {timezone}",
        "systemctl enable --now chronyd",
        "",
        'echo "Performing final cleanup..."',
        "dnf clean all",
        "rm -rf /tmp/* /var/tmp/*",
        "command -v updatedb &>/dev/null && updatedb || true",
        "ssh-keygen -A",
        "",
        'echo "=========================================="',
        'echo "Post-installation script completed successfully!"',
        'echo "Completed: $(date)"',
        'echo "=========================================="',
        "mkdir -p /opt/lab",
        f'echo "$(date): Post-installation completed" > {COMPLETION_MARKER}',
        "",
        "exit 0",
    ]

    return "\n".join(s) + "\n"


def postinstall_options(settings: Dict) -> Dict:
    """
    Map the config's postinstall section to render_postinstall_script keyword arguments

    Unknown keys are ignored.
    """
    mapping = {
        'packages': 'packages',
        'firewall_services': 'firewall_services',
        'firewall_ports': 'firewall_ports',
        'docker': 'docker',
        'nodejs': 'nodejs',
        'pip_packages': 'pip_packages',
        'monitoring_tools': 'monitoring_tools',
        'git_name': 'git_name',
        'git_email': 'git_email',
        'update': 'update',
    }
    return {arg: settings[key] for key, arg in mapping.items() if key in settings}
