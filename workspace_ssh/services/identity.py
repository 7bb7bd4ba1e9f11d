"""SSH identity discovery.

Collects candidate keys from identity files and the SSH agent and orders
them the way OpenSSH would try them: keys present in both places first,
then agent-only keys, then file-only keys.
"""

import logging
import os
from collections.abc import Iterable, Mapping
from pathlib import Path

import asyncssh

from workspace_ssh.models import IdentityKey, RegisteredKey, fingerprint, normalize_fingerprint
from workspace_ssh.utils.process import IS_WINDOWS, untildify

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY_FILES = [
    "id_rsa",
    "id_ecdsa",
    "id_ecdsa_sk",
    "id_ed25519",
    "id_ed25519_sk",
    "id_xmss",
    "id_dsa",
]

WINDOWS_AGENT_PIPE = "\\\\.\\pipe\\openssh-ssh-agent"


def default_identity_files() -> list[str]:
    ssh_dir = Path.home() / ".ssh"
    return [str(ssh_dir / name) for name in DEFAULT_IDENTITY_FILES]


def get_agent_socket(host_config: Mapping[str, str | list[str]]) -> str | None:
    """Resolve the agent socket for a host.

    Windows always uses the OpenSSH agent pipe; elsewhere ``IdentityAgent``
    wins over ``SSH_AUTH_SOCK``.
    """
    if IS_WINDOWS:
        return WINDOWS_AGENT_PIPE
    configured = host_config.get("IdentityAgent")
    sock = configured if isinstance(configured, str) and configured else os.environ.get("SSH_AUTH_SOCK")
    return untildify(sock) if sock else None


def _load_file_identity(path: str) -> IdentityKey | None:
    pub_path = f"{path}.pub"
    try:
        data = Path(pub_path).read_bytes()
    except FileNotFoundError:
        data = None
    except OSError as e:
        logger.debug("Cannot read identity file %s: %s", pub_path, e)
        return None

    if data is not None:
        try:
            public_key = asyncssh.import_public_key(data)
        except (asyncssh.KeyImportError, ValueError) as e:
            logger.debug("Cannot parse identity file %s: %s", pub_path, e)
            return None
        return IdentityKey(path, public_key, fingerprint(public_key.public_data))

    # No .pub companion: fall back to an unencrypted private key
    try:
        private_data = Path(path).read_bytes()
    except OSError:
        return None
    try:
        private_key = asyncssh.import_private_key(private_data)
    except asyncssh.KeyEncryptionError:
        logger.debug("Identity file %s is encrypted and has no .pub file", path)
        return None
    except (asyncssh.KeyImportError, ValueError) as e:
        logger.debug("Cannot parse identity file %s: %s", path, e)
        return None
    public_key = private_key.convert_to_public()
    return IdentityKey(
        path,
        public_key,
        fingerprint(public_key.public_data),
        is_private=True,
        private_key=private_key,
    )


async def get_agent_keys(agent_socket: str) -> list[IdentityKey]:
    """List the keys offered by an SSH agent.

    Returns:
        Agent-backed identities; empty if the agent cannot be reached
    """
    try:
        agent = await asyncssh.connect_agent(agent_socket)
    except (OSError, asyncssh.Error) as e:
        logger.debug("Cannot connect to SSH agent at %s: %s", agent_socket, e)
        return []

    if agent is None:
        return []

    try:
        key_pairs = await agent.get_keys()
    except (OSError, asyncssh.Error) as e:
        logger.debug("Cannot list SSH agent keys: %s", e)
        return []
    finally:
        agent.close()
        await agent.wait_closed()

    keys = []
    for key_pair in key_pairs:
        try:
            public_key = asyncssh.decode_ssh_public_key(key_pair.public_data)
        except asyncssh.KeyImportError:
            # Certificates and unsupported algorithms
            continue
        comment = key_pair.get_comment() or ""
        keys.append(
            IdentityKey(
                comment,
                public_key,
                fingerprint(key_pair.public_data),
                agent_support=True,
            )
        )
    return keys


def merge_identities(
    file_keys: list[IdentityKey],
    agent_keys: list[IdentityKey],
    identities_only: bool,
) -> list[IdentityKey]:
    """Order identities for authentication.

    Args:
        file_keys: Keys loaded from identity files, in config order
        agent_keys: Keys offered by the agent, in agent order
        identities_only: Drop agent keys with no matching file

    Returns:
        Keys in both places (as agent-backed file entries), then agent-only
        keys, then file-only keys; no two entries share type and fingerprint
    """
    remaining = list(file_keys)
    preferred: list[IdentityKey] = []
    agent_only: list[IdentityKey] = []

    for agent_key in agent_keys:
        match = next(
            (
                k
                for k in remaining
                if k.key_type == agent_key.key_type and k.fingerprint == agent_key.fingerprint
            ),
            None,
        )
        if match is not None:
            remaining.remove(match)
            match.agent_support = True
            preferred.append(match)
        elif not identities_only:
            agent_only.append(agent_key)

    result: list[IdentityKey] = []
    seen: set[tuple[str, str]] = set()
    for key in [*preferred, *agent_only, *remaining]:
        dedup_key = (key.key_type, key.fingerprint)
        if dedup_key in seen:
            continue
        seen.add(dedup_key)
        result.append(key)
    return result


def filter_registered(
    keys: Iterable[IdentityKey], registered: Iterable[RegisteredKey]
) -> list[IdentityKey]:
    """Keep only keys registered with the user's account."""
    fingerprints = {normalize_fingerprint(k.fingerprint) for k in registered if k.fingerprint}
    return [k for k in keys if normalize_fingerprint(k.fingerprint) in fingerprints]


async def gather(
    identity_files: list[str],
    agent_socket: str | None,
    identities_only: bool,
    registered: list[RegisteredKey] | None = None,
) -> list[IdentityKey]:
    """Gather and rank candidate SSH identities.

    Args:
        identity_files: Configured private key paths; defaults when empty
        agent_socket: SSH agent socket path or pipe
        identities_only: Only use keys backed by identity files
        registered: When given, keep only these fingerprints

    Returns:
        Candidate keys in authentication order
    """
    paths = [untildify(p) for p in identity_files] if identity_files else default_identity_files()

    file_keys = []
    for path in paths:
        key = _load_file_identity(path)
        if key is not None:
            file_keys.append(key)

    agent_keys = await get_agent_keys(agent_socket) if agent_socket else []

    keys = merge_identities(file_keys, agent_keys, identities_only)
    if registered is not None:
        keys = filter_registered(keys, registered)

    logger.debug(
        "Gathered %d identities: %s",
        len(keys),
        ", ".join(f"{k.filename} {k.key_type} SHA256:{k.fingerprint}" for k in keys),
    )
    return keys
