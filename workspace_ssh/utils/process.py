"""Local process and platform helpers."""

import logging
import os
import platform
import signal
import socket
import sys

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


def is_process_running(pid: int) -> bool:
    """Check if a process is alive by sending signal 0.

    Args:
        pid: Process id to probe

    Returns:
        True if the process exists (even if owned by another user)
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def kill_process(pid: int) -> None:
    """Terminate a process, logging instead of raising on failure."""
    try:
        os.kill(pid, signal.SIGTERM)
        logger.info("Sent SIGTERM to process %d", pid)
    except OSError as e:
        logger.error("Failed to kill process (pid: %d): %s", pid, e)


def find_free_port(host: str = "localhost") -> int:
    """Pick an ephemeral local port by binding to port 0."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        port: int = sock.getsockname()[1]
        return port


def platform_binary_suffix() -> str:
    """Return the os/arch suffix used for downloadable helper binaries.

    Examples: ``linux``, ``darwin-arm64``, ``windows-386.exe``
    """
    machine = platform.machine().lower()
    arch = ""
    if machine in ("arm64", "aarch64"):
        arch = "-arm64"
    elif IS_WINDOWS and machine in ("x86", "i386", "i686"):
        arch = "-386"

    if IS_WINDOWS:
        return f"windows{arch}.exe"
    if sys.platform == "darwin":
        return f"darwin{arch}"
    return f"linux{arch}"


def untildify(path: str) -> str:
    """Expand a leading ``~`` to the user's home directory."""
    return os.path.expanduser(path)
