"""Checks against the user's own ssh client binary."""

import asyncio
import logging
import re
import secrets

from workspace_ssh.errors import SSHError, SSHHandshakeTimeout, SSHOutputVerificationFailed

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 8
VERIFY_TIMEOUT = 8.5
VERSION_TIMEOUT = 3.0

_VERSION_RE = re.compile(r"\bOpenSSH[A-Za-z0-9_\-.]+\b")


async def _run(args: list[str], timeout: float) -> tuple[int, str, str]:
    """Run a command, returning (exit code, stdout, stderr).

    Raises:
        TimeoutError: If the command did not finish within timeout
    """
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    code = proc.returncode if proc.returncode is not None else -1
    return code, stdout.decode(errors="replace"), stderr.decode(errors="replace")


async def get_openssh_version(ssh_path: str = "ssh") -> str | None:
    """Return the OpenSSH version string of the local client, if any."""
    try:
        code, stdout, stderr = await _run([ssh_path, "-V"], VERSION_TIMEOUT)
    except (OSError, TimeoutError) as e:
        logger.debug("Could not determine OpenSSH version: %s", e)
        return None
    if code != 0:
        return None
    # ssh -V prints to stderr
    match = _VERSION_RE.search(stderr.strip() or stdout.strip())
    if not match:
        return None
    return match.group(0)


async def verify_ssh_connection(username: str, hostname: str, ssh_path: str = "ssh") -> None:
    """Run a marker echo through the local ssh client and check its output.

    Args:
        username: Remote user
        hostname: Host as the local SSH config knows it
        ssh_path: ssh binary to use

    Raises:
        SSHHandshakeTimeout: If ssh did not finish in time
        SSHOutputVerificationFailed: If ssh succeeded but the marker is missing
        SSHError: If ssh exited with an error or could not be started
    """
    marker = secrets.token_hex(12)
    args = [
        ssh_path,
        "-T",
        "-o",
        f"ConnectTimeout={CONNECT_TIMEOUT}",
        f"{username}@{hostname}",
        f'echo "{marker}"',
    ]
    try:
        code, stdout, stderr = await _run(args, VERIFY_TIMEOUT)
    except TimeoutError as e:
        raise SSHHandshakeTimeout(hostname, VERIFY_TIMEOUT) from e
    except OSError as e:
        raise SSHError(f"Failed to run {ssh_path}: {e}", e) from e

    if code != 0:
        raise SSHError(f"code: {code}\n\nstdout: {stdout}\n\nstderr: {stderr}")
    if marker not in stdout:
        raise SSHOutputVerificationFailed()
    logger.debug("Verified SSH output for %s@%s", username, hostname)
