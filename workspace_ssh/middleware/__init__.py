"""workspace_ssh middleware components."""

from workspace_ssh.middleware.base import WorkspaceSSHMiddleware
from workspace_ssh.middleware.errors import ErrorHandlingMiddleware

__all__ = ["ErrorHandlingMiddleware", "WorkspaceSSHMiddleware"]
