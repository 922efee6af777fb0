#!/usr/bin/env python3
"""
PowerShell Bridge

Run Hyper-V cmdlets through the PowerShell executable and parse their
JSON output.
"""

import json
import subprocess
import time
from typing import Any, Iterable, Optional

from almalab.lab_utils import logger, HyperVError

DEFAULT_POWERSHELL = 'powershell.exe'

# Substrings of PowerShell errors that are worth retrying
TRANSIENT_ERRORS = (
    'being used by another process',
    'timed out',
    'timeout',
    'cannot be performed while',
    'is in use',
    'the operation cannot be performed while the object is in its current state',
)


def ps_quote(value) -> str:
    """
    Quote a value as a PowerShell single-quoted string literal

    Single quotes inside the value are doubled; no variable expansion happens
    inside single-quoted strings.
    """
    return "'" + str(value).replace("'", "''") + "'"


def ps_bool(value: bool) -> str:
    return '$true' if value else '$false'


def ps_array(values: Iterable) -> str:
    """Build a PowerShell array literal of quoted strings"""
    return '@(' + ', '.join(ps_quote(v) for v in values) + ')'


def run_powershell(
    script: str,
    json_output: bool = False,
    check: bool = True,
    powershell: str = DEFAULT_POWERSHELL,
    timeout: Optional[int] = None
) -> Any:
    """
    Run a PowerShell script and return its output

    Args:
        script: PowerShell commands to run
        json_output: Pipe the result through ConvertTo-Json and parse it
        check: Raise HyperVError on a non-zero exit status
        powershell: PowerShell executable (powershell.exe or pwsh)
        timeout: Optional timeout in seconds

    Returns:
        Parsed JSON (dict, list or None) if json_output, otherwise stdout text

    Raises:
        HyperVError if PowerShell cannot be started or the script fails
    """
    if json_output:
        script = f"{script} | ConvertTo-Json -Depth 4 -Compress"

    # Stop on the first failing cmdlet instead of continuing with the next statement
    full_script = "$ErrorActionPreference = 'Stop'; " + script
    cmd = [powershell, '-NoProfile', '-NonInteractive', '-ExecutionPolicy', 'Bypass', '-Command', full_script]

    logger.debug(f"PS> {script}")

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as e:
        raise HyperVError(
            f"PowerShell executable '{powershell}' not found. "
            "Run almalab on the Hyper-V host or set hyperv.powershell in the config",
            command=script
        ) from e
    except subprocess.TimeoutExpired as e:
        raise HyperVError(f"PowerShell command timed out after {timeout} seconds", command=script) from e

    if check and result.returncode != 0:
        stderr = (result.stderr or '').strip()
        message = stderr.splitlines()[0] if stderr else f"exit status {result.returncode}"
        raise HyperVError(
            f"PowerShell command failed: {message}",
            command=script,
            returncode=result.returncode,
            stderr=stderr
        )

    output = (result.stdout or '').strip()
    if not json_output:
        return output
    if not output:
        return None

    try:
        return json.loads(output)
    except json.JSONDecodeError as e:
        raise HyperVError(f"Could not parse PowerShell JSON output: {e}", command=script) from e


def run_powershell_list(script: str, powershell: str = DEFAULT_POWERSHELL) -> list:
    """
    Run a PowerShell query and always return a list

    ConvertTo-Json emits a bare object for single results and nothing for
    empty pipelines.
    """
    result = run_powershell(script, json_output=True, powershell=powershell)
    if result is None:
        return []
    if isinstance(result, list):
        return result
    return [result]


def is_transient_error(error: Exception) -> bool:
    error_str = str(error).lower()
    stderr = getattr(error, 'stderr', '') or ''
    return any(marker in error_str or marker in stderr.lower() for marker in TRANSIENT_ERRORS)


def run_with_retry(
    script: str,
    max_retries: int = 3,
    json_output: bool = False,
    powershell: str = DEFAULT_POWERSHELL
) -> Any:
    """
    Run a PowerShell script, retrying transient failures

    Args:
        script: PowerShell commands to run
        max_retries: Maximum number of attempts (default: 3)
        json_output: Parse output as JSON
        powershell: PowerShell executable

    Returns:
        Output of run_powershell

    Raises:
        HyperVError from the final attempt or from a non-transient failure
    """
    for attempt in range(1, max_retries + 1):
        try:
            return run_powershell(script, json_output=json_output, powershell=powershell)
        except HyperVError as e:
            if is_transient_error(e) and attempt < max_retries:
                wait_time = attempt * 2  # Linear backoff: 2s, 4s, 6s
                logger.info(f"→ Transient Hyper-V error (attempt {attempt}/{max_retries}), retrying in {wait_time}s...")
                time.sleep(wait_time)
                continue
            raise
