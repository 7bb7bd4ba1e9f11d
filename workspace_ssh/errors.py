"""Error taxonomy for connection resolution.

Each error carries the context a caller needs to pick a fallback
or to show an actionable message (phase, host, log path, code).
"""


class WorkspaceSSHError(Exception):
    """Base class for all workspace_ssh errors."""


class Cancelled(WorkspaceSSHError):
    """Operation was cancelled cooperatively.

    Never reported as a failure; propagates silently to the caller.
    """

    def __init__(self, message: str = "cancelled") -> None:
        super().__init__(message)


class LockFailed(WorkspaceSSHError):
    """Shared store failed while acquiring or releasing a lock."""

    # Codes that are environmental noise rather than bugs
    IGNORED_CODES = frozenset({"ENOSPC"})

    def __init__(self, name: str, code: str, original_error: Exception | None = None):
        """Initialize lock failure.

        Args:
            name: Lock name that failed
            code: Error code of the underlying store failure (e.g. ENOSPC)
            original_error: Store exception that caused the failure
        """
        self.name = name
        self.code = code
        self.original_error = original_error
        super().__init__(f"Failed to lock {name} ({code}): {original_error}")

    @property
    def should_report(self) -> bool:
        """Whether this failure is worth an error report."""
        return self.code not in self.IGNORED_CODES


class NoRunningInstance(WorkspaceSSHError):
    """Workspace has no running instance; resolution is aborted."""

    def __init__(self, workspace_id: str, phase: str | None = None):
        self.workspace_id = workspace_id
        self.phase = phase
        super().__init__(
            f"Failed to connect to {workspace_id} workspace, "
            f"workspace not running: {phase}"
        )


class NoSSHGateway(WorkspaceSSHError):
    """Workspace host does not publish SSH gateway host keys."""

    def __init__(self, host: str):
        self.host = host
        super().__init__(f"SSH gateway not configured for host {host}")


class SSHError(WorkspaceSSHError):
    """SSH test connection failed (auth rejected, connection refused, ...)."""

    def __init__(self, message: str, original_error: Exception | None = None):
        self.original_error = original_error
        super().__init__(message)


class SSHHandshakeTimeout(SSHError):
    """SSH handshake did not complete in time.

    Distinct from authentication rejection so the resolver can fall back
    with a network-oriented message.
    """

    def __init__(self, host: str, timeout: float):
        self.host = host
        self.timeout = timeout
        super().__init__(
            f"Timed out while waiting for handshake with {host} ({timeout:g}s)"
        )


class SSHOutputVerificationFailed(WorkspaceSSHError):
    """Remote command output did not match the expected marker."""

    def __init__(self) -> None:
        super().__init__("SSH output verification failed")


class LocalAppUnavailable(WorkspaceSSHError):
    """Local helper process is unreachable or failed fatally."""

    def __init__(self, message: str, log_path: str | None = None):
        self.log_path = log_path
        super().__init__(message)


class NoExtensionIPCServer(WorkspaceSSHError):
    """Extension IPC server needed by the local SSH proxy is not reachable."""

    def __init__(self, port: int):
        self.port = port
        super().__init__(f"Extension IPC server not reachable on port {port}")


class NoLocalSSHSupport(WorkspaceSSHError):
    """Local SSH proxy could not be configured on this machine."""

    def __init__(self, message: str, code: str = "Unknown"):
        self.code = code
        super().__init__(message)


class WorkspaceAPIError(WorkspaceSSHError):
    """Service API call failed."""

    def __init__(self, method: str, message: str, code: str | int | None = None):
        self.method = method
        self.code = code
        super().__init__(f"{method} failed ({code}): {message}")


class HelperRPCError(WorkspaceSSHError):
    """Local helper RPC returned an error or could not be reached."""

    def __init__(self, method: str, code: str, message: str = ""):
        self.method = method
        self.code = code
        super().__init__(f"{method} failed ({code}): {message}")
