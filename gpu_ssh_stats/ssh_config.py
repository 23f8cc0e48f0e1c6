"""Turn an OpenSSH client config into connection profiles.

Only the subset needed to reach a node is understood: ``Host`` blocks and
their ``HostName``, ``User``, ``Port``, ``IdentityFile``, ``ProxyJump`` and
``ProxyCommand`` keywords. As in ``ssh_config(5)``, the first value obtained
for a keyword wins, both inside a block and across every block matching a
host, so generic ``Host *`` defaults belong at the end of the file.
"""
from __future__ import annotations

import getpass
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import ConfigParseError
from .models import DEFAULT_PORT, ConnectionProfile

_LOGGER = logging.getLogger(__name__)

_KEY_VALUE_RE = re.compile(r"^(\S+?)\s*(?:=|\s)\s*(.*)$")
_GLOB_CHARS = ("*", "?")


@dataclass
class HostBlock:
    """One ``Host`` section: its patterns and first-seen properties."""

    patterns: List[str]
    properties: Dict[str, str] = field(default_factory=dict)

    def matches(self, name: str) -> bool:
        return any(glob_match(pattern, name) for pattern in self.patterns)


def glob_match(pattern: str, name: str) -> bool:
    """Return True if *name* matches *pattern* (``*`` and ``?`` only, case-sensitive)."""
    regex = "".join(
        ".*" if ch == "*" else "." if ch == "?" else re.escape(ch) for ch in pattern
    )
    return re.fullmatch(regex, name, flags=re.DOTALL) is not None


def is_concrete(pattern: str) -> bool:
    return not any(ch in pattern for ch in _GLOB_CHARS)


def parse_blocks(text: str) -> Tuple[List[HostBlock], List[ConfigParseError]]:
    """Split *text* into ordered host blocks.

    Lines that cannot be used are skipped and returned as diagnostics.
    """
    blocks: List[HostBlock] = []
    diagnostics: List[ConfigParseError] = []
    current: Optional[HostBlock] = None

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        tokens = line.split()
        if tokens[0].lower() == "host":
            if current is not None:
                blocks.append(current)
            if len(tokens) > 1:
                current = HostBlock(patterns=tokens[1:])
            else:
                current = None
                diagnostics.append(ConfigParseError(lineno, raw, "Host line without patterns"))
            continue

        if current is None:
            diagnostics.append(ConfigParseError(lineno, raw, "option outside of a Host block"))
            continue

        match = _KEY_VALUE_RE.match(line)
        if not match or not match.group(2).strip():
            diagnostics.append(ConfigParseError(lineno, raw, "expected 'key value'"))
            continue
        key = match.group(1).lower()
        current.properties.setdefault(key, match.group(2).strip())

    if current is not None:
        blocks.append(current)

    for diag in diagnostics:
        _LOGGER.debug("Skipping ssh config %s", diag)
    return blocks, diagnostics


def resolve_host(blocks: List[HostBlock], alias: str) -> Dict[str, str]:
    """Collect the properties for *alias*; the earliest definition wins."""
    resolved: Dict[str, str] = {}
    for block in blocks:
        if not block.matches(alias):
            continue
        for key, value in block.properties.items():
            resolved.setdefault(key, value)
    return resolved


def clean_path(path: Optional[str]) -> Optional[str]:
    """Strip quotes from *path* and expand a leading ``~``."""
    if path is None:
        return None
    path = path.replace('"', "")
    if path.startswith("~"):
        try:
            path = str(Path(path).expanduser())
        except RuntimeError:
            # ~user for an unknown local user, or no home directory
            _LOGGER.debug("Cannot expand %s; keeping it as written", path)
    return path


def _parse_port(value: Optional[str]) -> int:
    try:
        return int(value) if value is not None else DEFAULT_PORT
    except ValueError:
        _LOGGER.debug("Invalid port %r in ssh config; using %s", value, DEFAULT_PORT)
        return DEFAULT_PORT


def _local_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - no login name available
        return "root"


def profiles_from_blocks(blocks: List[HostBlock]) -> List[ConnectionProfile]:
    """Build one profile per concrete host pattern, sorted by alias."""
    concrete = {p for block in blocks for p in block.patterns if is_concrete(p)}
    profiles: List[ConnectionProfile] = []
    for alias in sorted(concrete):
        resolved = resolve_host(blocks, alias)
        profiles.append(
            ConnectionProfile(
                name=alias,
                host=resolved.get("hostname", alias),
                username=resolved.get("user") or _local_user(),
                port=_parse_port(resolved.get("port")),
                identity_file=clean_path(resolved.get("identityfile")),
                proxy_jump=resolved.get("proxyjump"),
                proxy_command=resolved.get("proxycommand"),
            )
        )
    return profiles


def parse_ssh_config(text: str) -> List[ConnectionProfile]:
    """Return connection profiles for every concrete host in *text*."""
    blocks, _ = parse_blocks(text)
    return profiles_from_blocks(blocks)


def load_ssh_config(path: str) -> List[ConnectionProfile]:
    """Read and resolve the ssh config at *path*."""
    config_path = Path(path).expanduser()
    text = config_path.read_text(encoding="utf-8", errors="ignore")
    profiles = parse_ssh_config(text)
    _LOGGER.info("Loaded %s host(s) from %s", len(profiles), config_path)
    return profiles
