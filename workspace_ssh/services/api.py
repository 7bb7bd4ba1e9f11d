"""Service API clients.

Two wire protocols expose the same operations: the JSON-RPC server API
and the Connect-style public API. Both return the package's own models so
the resolver never sees wire shapes.
"""

import itertools
import logging
from typing import Any
from urllib.parse import urlparse

import asyncssh
import httpx

from workspace_ssh.errors import WorkspaceAPIError
from workspace_ssh.models import RegisteredKey, WorkspaceStatus, fingerprint, service_url

logger = logging.getLogger(__name__)

API_TIMEOUT = 10.0


def _auth_headers(token: str | None) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


class ServerAPI:
    """JSON-RPC 2.0 client for ``{service}/api/v1``."""

    def __init__(self, client: httpx.AsyncClient, host: str, token: str | None):
        """Initialize server API client.

        Args:
            client: Shared HTTP client
            host: Service URL
            token: Bearer access token
        """
        self._client = client
        self._endpoint = f"{service_url(host)}/api/v1"
        self._token = token
        self._ids = itertools.count(1)

    async def _call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._client.post(
                self._endpoint,
                json=payload,
                headers=_auth_headers(self._token),
                timeout=API_TIMEOUT,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise WorkspaceAPIError(method, str(e), e.response.status_code) from e
        except (httpx.HTTPError, ValueError) as e:
            raise WorkspaceAPIError(method, str(e)) from e

        if body.get("error"):
            error = body["error"]
            raise WorkspaceAPIError(method, error.get("message", ""), error.get("code"))
        return body.get("result")

    async def get_workspace_status(self, workspace_id: str) -> WorkspaceStatus:
        info = await self._call("getWorkspace", [workspace_id]) or {}
        instance = info.get("latestInstance") or {}
        return WorkspaceStatus(
            workspace_id=workspace_id,
            instance_id=instance.get("id"),
            phase=(instance.get("status") or {}).get("phase", "unknown"),
            workspace_url=instance.get("ideUrl", ""),
            owner_id=(info.get("workspace") or {}).get("ownerId"),
        )

    async def get_owner_token(self, workspace_id: str) -> str:
        token: str = await self._call("getOwnerToken", [workspace_id])
        return token

    async def get_registered_keys(self) -> list[RegisteredKey]:
        keys = await self._call("getSSHPublicKeys", []) or []
        return [RegisteredKey(k.get("name", ""), k.get("fingerprint", "")) for k in keys]

    async def send_heartbeat(
        self, workspace_id: str, instance_id: str, was_closed: bool = False
    ) -> None:
        params: dict[str, Any] = {"instanceId": instance_id}
        if was_closed:
            params["wasClosed"] = True
        await self._call("sendHeartBeat", [params])

    async def close(self) -> None:
        """Nothing to release; the HTTP client is shared."""


class PublicAPI:
    """Connect (JSON) client for ``https://api.{host}``."""

    WORKSPACES = "gitpod.experimental.v1.WorkspacesService"
    USERS = "gitpod.experimental.v1.UserService"
    IDE_CLIENT = "gitpod.experimental.v1.IDEClientService"

    def __init__(self, client: httpx.AsyncClient, host: str, token: str | None):
        self._client = client
        parsed = urlparse(service_url(host) if "://" in host else f"https://{host}")
        self._base_url = f"{parsed.scheme}://api.{parsed.netloc}"
        self._token = token

    async def _call(self, service: str, method: str, request: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}/{service}/{method}"
        try:
            response = await self._client.post(
                url,
                json=request,
                headers={**_auth_headers(self._token), "Connect-Protocol-Version": "1"},
                timeout=API_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise WorkspaceAPIError(method, str(e), "unavailable") from e

        if response.status_code != 200:
            try:
                error = response.json()
            except ValueError:
                error = {}
            raise WorkspaceAPIError(
                method,
                error.get("message", response.reason_phrase),
                f"PublicAPI:{error.get('code', response.status_code)}",
            )
        body: dict[str, Any] = response.json()
        return body

    async def get_workspace_status(self, workspace_id: str) -> WorkspaceStatus:
        response = await self._call(self.WORKSPACES, "GetWorkspace", {"workspaceId": workspace_id})
        workspace = response.get("result") or {}
        instance = (workspace.get("status") or {}).get("instance") or {}
        status = instance.get("status") or {}
        phase = str(status.get("phase", "PHASE_UNSPECIFIED"))
        return WorkspaceStatus(
            workspace_id=workspace_id,
            instance_id=instance.get("instanceId"),
            phase=phase.removeprefix("PHASE_").lower(),
            workspace_url=status.get("url", ""),
            owner_id=workspace.get("ownerId"),
        )

    async def get_owner_token(self, workspace_id: str) -> str:
        response = await self._call(self.WORKSPACES, "GetOwnerToken", {"workspaceId": workspace_id})
        return str(response.get("token", ""))

    async def get_registered_keys(self) -> list[RegisteredKey]:
        response = await self._call(self.USERS, "ListSSHKeys", {})
        keys = []
        for key in response.get("keys") or []:
            name = key.get("name", "")
            try:
                public_key = asyncssh.import_public_key(key.get("key", ""))
            except (asyncssh.KeyImportError, ValueError) as e:
                logger.error("Error while parsing SSH public key %s: %s", name, e)
                keys.append(RegisteredKey(name, ""))
                continue
            keys.append(RegisteredKey(name, fingerprint(public_key.public_data)))
        return keys

    async def send_heartbeat(
        self, workspace_id: str, instance_id: str, was_closed: bool = False
    ) -> None:
        method = "SendDidClose" if was_closed else "SendHeartbeat"
        await self._call(self.IDE_CLIENT, method, {"workspaceId": workspace_id})

    async def close(self) -> None:
        """Nothing to release; the HTTP client is shared."""


def create_workspace_api(
    client: httpx.AsyncClient, host: str, token: str | None, use_public_api: bool
) -> ServerAPI | PublicAPI:
    """Pick the API implementation once per session."""
    logger.info("Going to use %s API for %s", "public" if use_public_api else "server", host)
    if use_public_api:
        return PublicAPI(client, host, token)
    return ServerAPI(client, host, token)
