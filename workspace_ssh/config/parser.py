"""SSH config file parser.

Reads the user's and the system's SSH client configuration, computes the
effective settings for a host and maintains the managed include block that
pulls in the generated sub-config.
"""

import errno
import logging
import os
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from workspace_ssh.errors import NoLocalSSHSupport
from workspace_ssh.utils.process import IS_WINDOWS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".ssh" / "config"
MANAGED_CONFIG_PATH = Path.home() / ".ssh" / "workspace_ssh.d" / "config"

MANAGED_HEADER = "### This file is managed by workspace-ssh. Any manual changes will be lost."
INCLUDE_START = "## START WORKSPACE-SSH INTEGRATION"
INCLUDE_END = "## END WORKSPACE-SSH INTEGRATION"
INCLUDE_BLOCK = (
    f"{INCLUDE_START}\n"
    "## This section is managed by workspace-ssh. Any manual changes will be lost.\n"
    'Include "workspace_ssh.d/config"\n'
    f"{INCLUDE_END}"
)
_INCLUDE_RE = re.compile(
    re.escape(INCLUDE_START) + r".+?" + re.escape(INCLUDE_END), re.DOTALL
)

# Canonical spelling of the directives we read
KNOWN_DIRECTIVES = {
    name.lower(): name
    for name in (
        "Host",
        "HostName",
        "User",
        "Port",
        "IdentityAgent",
        "IdentitiesOnly",
        "IdentityFile",
        "ForwardAgent",
        "ProxyJump",
        "ProxyCommand",
    )
}

# Directives whose values accumulate instead of first-wins
MULTI_VALUE = frozenset({"IdentityFile", "CertificateFile", "LocalForward", "RemoteForward"})

_DIRECTIVE_RE = re.compile(r"^(\S+?)(?:\s*=\s*|\s+)(.*)$")


def system_config_path() -> Path:
    """Location of the machine-wide SSH client config."""
    if IS_WINDOWS:
        base = os.environ.get("ALLUSERSPROFILE", "C:\\ProgramData")
        return Path(base) / "ssh" / "ssh_config"
    return Path("/etc/ssh/ssh_config")


def normalize_param(param: str) -> str:
    """Return the canonical spelling of a directive name."""
    return KNOWN_DIRECTIVES.get(param.lower(), param)


def _pattern_to_regex(pattern: str) -> re.Pattern[str]:
    escaped = re.escape(pattern.lower()).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(f"^{escaped}$")


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


@dataclass
class Comment:
    """Blank or comment line, kept for rendering."""

    text: str

    def render(self) -> str:
        return self.text


@dataclass
class Directive:
    """Single ``Param value`` line."""

    param: str
    value: str

    def render(self) -> str:
        return f"{self.param} {self.value}"


@dataclass
class Section(Directive):
    """``Host`` or ``Match`` line and the directives below it."""

    entries: list[Directive | Comment] = field(default_factory=list)

    @property
    def patterns(self) -> list[str]:
        try:
            return shlex.split(self.value)
        except ValueError:
            return self.value.split()

    def matches(self, host: str) -> bool:
        """Host section match: any positive pattern, no negated pattern."""
        if self.param != "Host":
            return False
        host = host.lower()
        matched = False
        for pattern in self.patterns:
            negated = pattern.startswith("!")
            if _pattern_to_regex(pattern.lstrip("!")).match(host):
                if negated:
                    return False
                matched = True
        return matched

    def render(self) -> str:
        lines = [f"{self.param} {self.value}"]
        for entry in self.entries:
            if isinstance(entry, Comment):
                lines.append(entry.render())
            else:
                lines.append(f"  {entry.render()}")
        return "\n".join(lines)


def parse_config(content: str) -> list[Directive | Comment]:
    """Parse SSH config text into a directive tree.

    Args:
        content: Raw config file content

    Returns:
        Top-level lines; Host/Match sections carry their own entries
    """
    lines: list[Directive | Comment] = []
    current: Section | None = None

    for raw in content.splitlines():
        stripped = raw.strip()
        if not stripped or stripped.startswith("#"):
            (current.entries if current else lines).append(Comment(stripped))
            continue

        match = _DIRECTIVE_RE.match(stripped)
        if not match:
            # Bare keyword without a value
            param, value = stripped, ""
        else:
            param, value = match.group(1), match.group(2).strip()
        param = normalize_param(param)
        value = _unquote(value)

        if param in ("Host", "Match"):
            current = Section(param, value)
            lines.append(current)
        elif current is not None:
            current.entries.append(Directive(param, value))
        else:
            lines.append(Directive(param, value))

    return lines


class SSHConfigStore:
    """Parsed SSH client configuration.

    Holds the user's config followed by the system config so that user
    settings win under first-value-wins semantics.
    """

    def __init__(self, lines: list[Directive | Comment] | None = None):
        self._lines: list[Directive | Comment] = lines if lines is not None else []

    @classmethod
    def parse(cls, content: str) -> "SSHConfigStore":
        return cls(parse_config(content))

    @classmethod
    def load_from_filesystem(
        cls,
        config_path: Path | str | None = None,
        system_path: Path | str | None = None,
    ) -> "SSHConfigStore":
        """Load the user config and append the system config.

        Args:
            config_path: User config (default: ~/.ssh/config)
            system_path: System config (default: platform location)

        Returns:
            Merged configuration; missing or unreadable files contribute nothing
        """
        user_path = Path(config_path).expanduser() if config_path else DEFAULT_CONFIG_PATH
        sys_path = Path(system_path) if system_path else system_config_path()

        lines: list[Directive | Comment] = []
        for path in (user_path, sys_path):
            if not path.is_file():
                continue
            try:
                content = path.read_text(encoding="utf-8").strip()
                logger.debug("Reading SSH config from %s", path)
            except OSError as e:
                logger.warning("Cannot read SSH config %s: %s", path, e)
                continue
            lines.extend(parse_config(content))

        return cls(lines)

    @classmethod
    def load_managed(cls, path: Path | str = MANAGED_CONFIG_PATH) -> "SSHConfigStore":
        """Load the generated sub-config.

        Raises:
            NoLocalSSHSupport: If the file does not exist
        """
        path = Path(path)
        if not path.is_file():
            raise NoLocalSSHSupport(
                f"Managed ssh config file {path} does not exist", code="NotFile"
            )
        return cls.parse(path.read_text(encoding="utf-8").strip())

    def save_managed(self, path: Path | str = MANAGED_CONFIG_PATH) -> None:
        """Write this configuration to the generated sub-config.

        Raises:
            NoLocalSSHSupport: If the file is missing or cannot be written
        """
        path = Path(path)
        if not path.is_file():
            raise NoLocalSSHSupport(
                f"Managed ssh config file {path} does not exist", code="NotFile"
            )
        try:
            path.write_text(self.to_string() + "\n", encoding="utf-8")
        except OSError as e:
            raise NoLocalSSHSupport(
                f"Could not write managed ssh config file {path}", code=_errno_name(e)
            ) from e

    def get_host_configuration(self, host: str) -> dict[str, str | list[str]]:
        """Compute effective settings for a host.

        First value wins per directive; multi-value directives such as
        IdentityFile accumulate in file order.

        Args:
            host: Host alias or name as typed by the user

        Returns:
            Mapping of canonical directive name to value (list for multi-value)
        """
        result: dict[str, str | list[str]] = {}

        def apply(directive: Directive) -> None:
            if directive.param in MULTI_VALUE:
                values = result.setdefault(directive.param, [])
                assert isinstance(values, list)
                values.append(directive.value)
            elif directive.param not in result:
                result[directive.param] = directive.value

        for line in self._lines:
            if isinstance(line, Section):
                if line.matches(host):
                    for entry in line.entries:
                        if isinstance(entry, Directive):
                            apply(entry)
            elif isinstance(line, Directive):
                apply(line)

        return result

    def get_all_configured_hosts(self) -> list[str]:
        """List concrete host aliases, skipping patterns and negations."""
        hosts: dict[str, None] = {}
        for line in self._lines:
            if not isinstance(line, Section) or line.param != "Host" or not line.value:
                continue
            patterns = line.patterns
            if not patterns:
                continue
            value = patterns[0]
            if value.startswith("!") or "*" in value or "?" in value:
                continue
            hosts[value] = None
        return list(hosts)

    def add_host_configuration(self, config: dict[str, str]) -> None:
        """Replace any Host section with the same name, then append.

        Args:
            config: Directives; must include ``Host``
        """
        host = config["Host"]
        self._lines = [
            line
            for line in self._lines
            if not (isinstance(line, Section) and line.param == "Host" and line.value == host)
        ]
        section = Section("Host", host)
        for param, value in config.items():
            if param == "Host":
                continue
            section.entries.append(Directive(normalize_param(param), value))
        if self._lines and not (
            isinstance(self._lines[-1], Comment) and not self._lines[-1].text
        ):
            self._lines.append(Comment(""))
        self._lines.append(section)

    def to_string(self) -> str:
        return "\n".join(line.render() for line in self._lines)

    @staticmethod
    def ensure_managed_include(
        config_path: Path | str | None = None,
        managed_path: Path | str = MANAGED_CONFIG_PATH,
    ) -> None:
        """Create the generated sub-config and include it from the user config.

        Idempotent: a user config that already carries the expected block
        is left byte-for-byte unchanged.

        Raises:
            NoLocalSSHSupport: If either file cannot be created or written
        """
        try:
            _create_managed_config(Path(managed_path))
        except OSError as e:
            raise NoLocalSSHSupport(
                "Failed to create managed ssh config",
                code=f"ManagedSSHConfig:{_errno_name(e)}",
            ) from e

        user_path = Path(config_path).expanduser() if config_path else DEFAULT_CONFIG_PATH
        try:
            _add_include_to_user_config(user_path)
        except OSError as e:
            raise NoLocalSSHSupport(
                "Failed to add include to user ssh config",
                code=f"UserSSHConfig:{_errno_name(e)}",
            ) from e


def _errno_name(error: OSError) -> str:
    if error.errno is None:
        return "Unknown"
    return errno.errorcode.get(error.errno, "Unknown")


def _create_managed_config(path: Path) -> None:
    directory = path.parent
    if not directory.exists():
        directory.mkdir(parents=True, exist_ok=True)
    if not directory.is_dir():
        raise NoLocalSSHSupport(
            f"{directory} is not a directory, cannot write ssh config file",
            code="ManagedSSHConfig:NotDirectory",
        )
    if not path.exists():
        path.write_text(MANAGED_HEADER, encoding="utf-8")
        logger.info("Created managed ssh config %s", path)
    if not path.is_file():
        raise NoLocalSSHSupport(
            f"{path} is not a file, cannot write ssh config file",
            code="ManagedSSHConfig:NotFile",
        )


def _add_include_to_user_config(path: Path) -> None:
    content = ""
    if path.exists():
        content = path.read_text(encoding="utf-8").strip()
    original = content

    has_include = False
    for block in _INCLUDE_RE.findall(content):
        if block == INCLUDE_BLOCK:
            has_include = True
        else:
            content = content.replace(block, "")
            logger.info("Removing outdated managed block from %s", path)

    if not has_include:
        content = f"{INCLUDE_BLOCK}\n\n{content}" if content else INCLUDE_BLOCK

    if content == original:
        return

    directory = path.parent
    if not directory.exists():
        directory.mkdir(parents=True, exist_ok=True)
    if not directory.is_dir():
        raise NoLocalSSHSupport(
            f"{directory} is not a directory, cannot write ssh config file",
            code="UserSSHConfig:NotDirectory",
        )
    path.write_text(content + "\n", encoding="utf-8")
    logger.info("Updated managed include block in %s", path)
