"""Service version detection and feature gating."""

import asyncio
import logging
import re
from dataclasses import dataclass, field

import httpx

from workspace_ssh.models import service_url
from workspace_ssh.utils.native_ssh import get_openssh_version

logger = logging.getLogger(__name__)

MIN_VERSION = "0.0.0"

VERSION_TIMEOUT = 1.5
VERSION_ATTEMPTS = 3
VERSION_RETRY_DELAY = 1.0

# Release builds embed YYYY.M.D somewhere in the version string
_EMBEDDED_RE = re.compile(r"(\d{4})\.(\d+)\.(\d+)")
_PLAIN_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")

FEATURE_MIN_VERSIONS = {
    "SSHPublicKeys": (2022, 7, 0),
    "localHeartbeat": (2022, 7, 0),
}


@dataclass(frozen=True)
class ServiceVersion:
    """Parsed service version.

    Attributes:
        raw: Version string as reported by the service
        parts: (major, minor, patch); (0, 0, 0) when unparseable
    """

    raw: str = ""
    parts: tuple[int, int, int] = field(default=(0, 0, 0))

    @classmethod
    def parse(cls, raw: str) -> "ServiceVersion":
        """Parse a raw version string.

        ``release-2022.06.1.7`` -> 2022.6.1, ``123.0.1`` -> 123.0.1,
        anything else -> 0.0.0.
        """
        raw = raw.strip()
        match = _EMBEDDED_RE.search(raw) or _PLAIN_RE.match(raw)
        if not match:
            return cls(raw)
        major, minor, patch = (int(part) for part in match.groups())
        return cls(raw, (major, minor, patch))

    @property
    def version(self) -> str:
        return ".".join(str(part) for part in self.parts)

    def __str__(self) -> str:
        return self.version


MINIMUM = ServiceVersion(MIN_VERSION, (0, 0, 0))


def is_feature_supported(version: ServiceVersion, feature: str) -> bool:
    """Check whether a service version supports a feature.

    Args:
        version: Parsed service version
        feature: ``SSHPublicKeys`` or ``localHeartbeat``

    Raises:
        ValueError: If the feature name is unknown
    """
    try:
        minimum = FEATURE_MIN_VERSIONS[feature]
    except KeyError:
        raise ValueError(f"Unknown feature: {feature}") from None
    return version.parts >= minimum


class VersionCache:
    """Fetches and caches service versions per service URL.

    Only successful fetches are cached; a failed fetch yields the minimum
    version and is retried on the next call.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        attempts: int = VERSION_ATTEMPTS,
        retry_delay: float = VERSION_RETRY_DELAY,
    ):
        self._client = client
        self._attempts = attempts
        self._retry_delay = retry_delay
        self._versions: dict[str, ServiceVersion] = {}

    async def get(self, host: str) -> ServiceVersion:
        """Return the version of the service at host."""
        url = service_url(host)
        cached = self._versions.get(url)
        if cached is not None:
            logger.debug("Using cached version %s for %s", cached, url)
            return cached

        raw = await self._fetch(url)
        if raw is None:
            logger.info("Failed to fetch version from %s, falling back to %s", url, MIN_VERSION)
            return MINIMUM

        version = ServiceVersion.parse(raw)
        logger.info("Got version from %s: %s (%s)", url, version, raw)
        self._versions[url] = version
        return version

    async def _fetch(self, url: str) -> str | None:
        endpoint = f"{url}/api/version"
        for attempt in range(1, self._attempts + 1):
            try:
                response = await self._client.get(endpoint, timeout=VERSION_TIMEOUT)
                response.raise_for_status()
                return response.text
            except httpx.HTTPError as e:
                left = self._attempts - attempt
                logger.warning(
                    "Failed to fetch version from %s, %d attempts left: %s", url, left, e
                )
                if left > 0:
                    await asyncio.sleep(self._retry_delay)
        return None


class ClientVersionCache:
    """OpenSSH versions of local ssh binaries, by path.

    Only successful lookups are cached.
    """

    def __init__(self) -> None:
        self._versions: dict[str, str] = {}

    async def get(self, ssh_path: str = "ssh") -> str | None:
        """Return the OpenSSH version of the ssh binary at ssh_path, if any."""
        cached = self._versions.get(ssh_path)
        if cached is not None:
            return cached
        version = await get_openssh_version(ssh_path)
        if version is not None:
            self._versions[ssh_path] = version
        return version
