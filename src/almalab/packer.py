#!/usr/bin/env python3
"""
Packer Integration

Render hyperv-iso Packer templates (HCL2), lay out the build directory,
and run the Packer CLI.
"""

import json
import os
import subprocess
from typing import Dict, List, Optional

from almalab.lab_utils import logger, PackerError
from almalab.hyperv import SECURE_BOOT_TEMPLATE

TEMPLATE_FILENAME = 'almalinux.pkr.hcl'
HTTP_DIRNAME = 'http'
POSTINSTALL_FILENAME = 'postinstall.sh'
SOURCE_NAME = 'almalinux'
HYPERV_PLUGIN = {'version': '>= 1.1.0', 'source': 'github.com/hashicorp/hyperv'}


class HCLExpr:
    """An HCL expression written as-is (var.name, source.x.y, function calls)"""

    def __init__(self, text: str):
        self.text = text

    def __repr__(self):
        return f"HCLExpr({self.text!r})"

    def __eq__(self, other):
        return isinstance(other, HCLExpr) and other.text == self.text


class HCLBlock:
    """An HCL block: type, labels and a body of attributes and nested blocks"""

    def __init__(self, block_type: str, *labels: str, body: Optional[Dict] = None):
        self.block_type = block_type
        self.labels = list(labels)
        self.body = body or {}


def _quote(value: str) -> str:
    # json.dumps escapes quotes, backslashes and control characters like HCL does
    quoted = json.dumps(value, ensure_ascii=False)
    return quoted.replace('${', '$${').replace('%{', '%%{')


def render_value(value, indent: int = 0) -> str:
    """Render a Python value as an HCL expression"""
    pad = '  ' * indent
    if isinstance(value, HCLExpr):
        return value.text
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return _quote(value)
    if isinstance(value, (list, tuple)):
        if not value:
            return '[]'
        items = [f"{pad}  {render_value(v, indent + 1)}," for v in value]
        return '[\n' + '\n'.join(items) + f"\n{pad}]"
    if isinstance(value, dict):
        if not value:
            return '{}'
        items = [f"{pad}  {_attribute_key(k)} = {render_value(v, indent + 1)}" for k, v in value.items()]
        return '{\n' + '\n'.join(items) + f"\n{pad}}}"
    if value is None:
        return 'null'
    raise TypeError(f"Cannot render {type(value).__name__} as HCL")


def _attribute_key(key: str) -> str:
    if key.replace('_', '').replace('-', '').isalnum() and not key[0].isdigit():
        return key
    return _quote(key)


def _render_block(block: HCLBlock, indent: int = 0) -> str:
    pad = '  ' * indent
    header = ' '.join([block.block_type] + [_quote(label) for label in block.labels])
    lines = [f"{pad}{header} {{"]
    for key, value in block.body.items():
        if isinstance(value, HCLBlock):
            lines.append(_render_block(value, indent + 1))
        elif isinstance(value, list) and value and all(isinstance(v, HCLBlock) for v in value):
            for nested in value:
                lines.append(_render_block(nested, indent + 1))
        else:
            lines.append(f"{pad}  {key} = {render_value(value, indent + 1)}")
    lines.append(f"{pad}}}")
    return '\n'.join(lines)


def render_hcl(blocks: List[HCLBlock]) -> str:
    """
    Render top-level blocks as an HCL2 document

    Nested blocks go in a block's body as HCLBlock values (or lists of them);
    dict values become map attributes.
    """
    return '\n\n'.join(_render_block(block) for block in blocks) + '\n'


def build_packer_template(
    generation: int,
    boot_command: List[str],
    cpus: int = 2,
    memory: int = 4096,
    disk_size: int = 40,
    ssh_username: str = 'packer',
    headless: bool = True,
    secure_boot: bool = True,
    nested: bool = True,
    http_ports: tuple = (8000, 9000),
    boot_wait: str = '5s',
    ssh_timeout: str = '45m',
    clean_cloud_init: bool = True
) -> str:
    """
    Build a hyperv-iso Packer template

    ISO location, checksum, switch, output directory, VM name and the SSH
    password are template variables so one rendered template serves
    every build.

    Args:
        generation: 1 (BIOS) or 2 (UEFI)
        boot_command: Keystrokes that start the kickstart install
        cpus: Number of virtual processors
        memory: Memory in MB
        disk_size: Disk size in GB
        ssh_username: User created by the kickstart for Packer's SSH communicator
        headless: Do not open a VM console window during the build
        secure_boot: Gen2 only
        nested: Expose virtualization extensions to the guest
        http_ports: Port range for Packer's HTTP server
        boot_wait: Delay before typing boot_command
        ssh_timeout: How long to wait for the installed system's SSH
        clean_cloud_init: Reset cloud-init state so VMs cloned from the image run it again

    Returns:
        Template text (.pkr.hcl)
    """
    if generation not in (1, 2):
        raise ValueError(f"Generation must be 1 or 2, got {generation}")

    variables = [
        HCLBlock('variable', 'iso_url', body={'type': HCLExpr('string')}),
        HCLBlock('variable', 'iso_checksum', body={'type': HCLExpr('string')}),
        HCLBlock('variable', 'vm_name', body={'type': HCLExpr('string'), 'default': 'almalinux-template'}),
        HCLBlock('variable', 'switch_name', body={'type': HCLExpr('string'), 'default': 'AlmaLab'}),
        HCLBlock('variable', 'output_directory', body={'type': HCLExpr('string'), 'default': 'output-almalinux'}),
        HCLBlock('variable', 'ssh_password', body={'type': HCLExpr('string'), 'sensitive': True}),
    ]

    source = {
        'vm_name': HCLExpr('var.vm_name'),
        'generation': generation,
        'cpus': cpus,
        'memory': memory,
        'disk_size': disk_size * 1024,
        'enable_dynamic_memory': False,
        'enable_virtualization_extensions': nested,
        'enable_mac_spoofing': nested,
        'switch_name': HCLExpr('var.switch_name'),
        'iso_url': HCLExpr('var.iso_url'),
        'iso_checksum': HCLExpr('var.iso_checksum'),
        'http_directory': HTTP_DIRNAME,
        'http_port_min': http_ports[0],
        'http_port_max': http_ports[1],
        'boot_wait': boot_wait,
        'boot_command': boot_command,
        'communicator': 'ssh',
        'ssh_username': ssh_username,
        'ssh_password': HCLExpr('var.ssh_password'),
        'ssh_timeout': ssh_timeout,
        'shutdown_command': 'sudo shutdown -P now',
        'output_directory': HCLExpr('var.output_directory'),
        'headless': headless,
    }
    if generation == 2:
        source['enable_secure_boot'] = secure_boot
        if secure_boot:
            source['secure_boot_template'] = SECURE_BOOT_TEMPLATE

    provisioners = [
        HCLBlock('provisioner', 'shell', body={
            'script': POSTINSTALL_FILENAME,
            'execute_command': "chmod +x {{ .Path }}; sudo -E bash '{{ .Path }}'",
        }),
    ]
    if clean_cloud_init:
        provisioners.append(HCLBlock('provisioner', 'shell', body={
            'inline': ['sudo cloud-init clean --logs || true'],
        }))

    blocks = [
        HCLBlock('packer', body={
            'required_plugins': HCLBlock('required_plugins', body={'hyperv': dict(HYPERV_PLUGIN)}),
        }),
        *variables,
        HCLBlock('source', 'hyperv-iso', SOURCE_NAME, body=source),
        HCLBlock('build', body={
            'sources': [f"source.hyperv-iso.{SOURCE_NAME}"],
            'provisioner': provisioners,
        }),
    ]
    return render_hcl(blocks)


def prepare_build_dir(build_dir: str, template_text: str, ks_text: str, postinstall_text: str) -> Dict[str, str]:
    """
    Write the Packer template, http/ks.cfg and postinstall.sh into build_dir

    Returns:
        Dict with 'template', 'kickstart' and 'postinstall' paths
    """
    http_dir = os.path.join(build_dir, HTTP_DIRNAME)
    os.makedirs(http_dir, exist_ok=True)

    paths = {
        'template': os.path.join(build_dir, TEMPLATE_FILENAME),
        'kickstart': os.path.join(http_dir, 'ks.cfg'),
        'postinstall': os.path.join(build_dir, POSTINSTALL_FILENAME),
    }

    with open(paths['template'], 'w') as f:
        f.write(template_text)
    # Kickstart and shell scripts are read by Linux: keep LF line endings on Windows hosts
    with open(paths['kickstart'], 'w', newline='\n') as f:
        f.write(ks_text)
    with open(paths['postinstall'], 'w', newline='\n') as f:
        f.write(postinstall_text)
    os.chmod(paths['postinstall'], 0o755)

    logger.info(f"✓ Packer build directory prepared: {build_dir}")
    return paths


def build_packer_command(
    action: str,
    template: str,
    variables: Optional[Dict[str, str]] = None,
    var_file: Optional[str] = None,
    packer_binary: str = 'packer',
    force: bool = False
) -> List[str]:
    """
    Build a Packer command line

    Args:
        action: init, validate or build
        template: Template file or directory
        variables: Values passed with -var
        var_file: Optional .pkrvars.hcl file
        packer_binary: Packer executable
        force: Pass -force to build (replaces an existing output directory)

    Returns:
        Argument list for subprocess
    """
    if action not in ('init', 'validate', 'build'):
        raise ValueError(f"Unsupported packer action: {action}")

    cmd = [packer_binary, action]
    if action == 'init':
        cmd.append('-upgrade')
    else:
        if action == 'build' and force:
            cmd.append('-force')
        for key, value in (variables or {}).items():
            cmd.extend(['-var', f"{key}={value}"])
        if var_file:
            cmd.append(f"-var-file={var_file}")
    cmd.append(template)
    return cmd


def _redact(cmd: List[str]) -> str:
    parts = []
    for part in cmd:
        if part.startswith('ssh_password='):
            part = 'ssh_password=********'
        parts.append(part)
    return ' '.join(parts)


def run_packer(cmd: List[str], cwd: Optional[str] = None, log_file: Optional[str] = None) -> int:
    """
    Run a Packer command, streaming its output to the logger

    Args:
        cmd: Command from build_packer_command
        cwd: Working directory (the build directory, so relative paths resolve)
        log_file: Enable PACKER_LOG and write the detailed log here

    Returns:
        Exit status (always 0)

    Raises:
        PackerError if Packer is missing or exits with a non-zero status
    """
    env = dict(os.environ)
    if log_file:
        env['PACKER_LOG'] = '1'
        env['PACKER_LOG_PATH'] = log_file

    logger.info(f"→ Running: {_redact(cmd)}")
    try:
        process = subprocess.Popen(
            cmd,
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1
        )
    except FileNotFoundError as e:
        raise PackerError(
            f"Packer executable '{cmd[0]}' not found. Install Packer or set packer.binary in the config"
        ) from e

    for line in process.stdout:
        logger.info(line.rstrip())
    returncode = process.wait()

    logger.debug(f"Packer command returned code: {returncode}")
    if returncode != 0:
        raise PackerError(f"packer {cmd[1]} failed with exit status {returncode}")
    return returncode


def packer_init(template: str, packer_binary: str = 'packer', cwd: Optional[str] = None) -> int:
    """Install the plugins listed in required_plugins"""
    return run_packer(build_packer_command('init', template, packer_binary=packer_binary), cwd=cwd)


def packer_validate(template: str, variables: Optional[Dict[str, str]] = None,
                    packer_binary: str = 'packer', cwd: Optional[str] = None) -> int:
    cmd = build_packer_command('validate', template, variables=variables, packer_binary=packer_binary)
    return run_packer(cmd, cwd=cwd)


def packer_build(template: str, variables: Optional[Dict[str, str]] = None, packer_binary: str = 'packer',
                 cwd: Optional[str] = None, force: bool = False, log_file: Optional[str] = None) -> int:
    cmd = build_packer_command('build', template, variables=variables, packer_binary=packer_binary, force=force)
    return run_packer(cmd, cwd=cwd, log_file=log_file)


def find_built_vhdx(output_dir: str) -> Optional[str]:
    """
    Find the VHDX exported by a hyperv-iso build

    Packer exports to '<output_dir>/Virtual Hard Disks/<vm_name>.vhdx'.
    """
    if not os.path.isdir(output_dir):
        return None
    found = []
    for dirpath, _, filenames in os.walk(output_dir):
        for filename in filenames:
            if filename.lower().endswith('.vhdx'):
                found.append(os.path.join(dirpath, filename))
    return sorted(found)[0] if found else None
