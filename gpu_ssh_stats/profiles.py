"""Connection profile store and import from ssh config or JSON."""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import voluptuous as vol

from .errors import ProfileError
from .models import DEFAULT_PORT, ConnectionProfile
from .ssh_config import parse_ssh_config

_LOGGER = logging.getLogger(__name__)

PROFILE_ADDED = "added"
PROFILE_UPDATED = "updated"
PROFILE_REMOVED = "removed"

TO_REDACT = {"password"}

_optional_str = vol.Any(None, vol.Coerce(str))

PROFILE_SCHEMA = vol.Schema(
    {
        vol.Optional("id"): _optional_str,
        vol.Optional("name"): _optional_str,
        vol.Required("host"): vol.All(str, vol.Strip, vol.Length(min=1)),
        vol.Optional("port", default=DEFAULT_PORT): vol.All(
            vol.Coerce(int), vol.Range(min=1, max=65535)
        ),
        vol.Required("username"): vol.All(str, vol.Strip, vol.Length(min=1)),
        vol.Optional("password"): _optional_str,
        vol.Optional("identityFile"): _optional_str,
        # older SERVERS_JSON entries name the identity file "key"
        vol.Optional("key"): _optional_str,
        vol.Optional("proxyJump"): _optional_str,
        vol.Optional("proxyCommand"): _optional_str,
    },
    extra=vol.REMOVE_EXTRA,
)

ProfileListener = Callable[[str, ConnectionProfile], None]


def profile_from_data(data: Any) -> ConnectionProfile:
    """Validate one JSON profile object and build the profile."""
    try:
        validated: Dict[str, Any] = PROFILE_SCHEMA(data)
    except vol.Invalid as err:
        raise ProfileError(f"Invalid profile {data!r}: {err}") from err
    if not validated.get("identityFile") and validated.get("key"):
        validated["identityFile"] = validated["key"]
    return ConnectionProfile.from_dict(validated)


def profiles_from_json(text: str) -> List[ConnectionProfile]:
    """Parse a JSON array of profiles; invalid entries are skipped."""
    try:
        data = json.loads(text)
    except ValueError as err:
        raise ProfileError(f"Invalid profile JSON: {err}") from err
    if not isinstance(data, list):
        raise ProfileError("Profile JSON must be an array")
    profiles: List[ConnectionProfile] = []
    for entry in data:
        try:
            profiles.append(profile_from_data(entry))
        except ProfileError as err:
            _LOGGER.warning("Skipping profile: %s", err)
    return profiles


def import_profiles(text: str) -> List[ConnectionProfile]:
    """Import profiles from ssh config text or a JSON array."""
    if text.lstrip().startswith("["):
        return profiles_from_json(text)
    return parse_ssh_config(text)


class ProfileStore:
    """Ordered collection of connection profiles with change listeners."""

    def __init__(self, profiles: Optional[Iterable[ConnectionProfile]] = None) -> None:
        self._profiles: Dict[str, ConnectionProfile] = {}
        self._listeners: List[ProfileListener] = []
        for profile in profiles or ():
            self.add(profile)

    def __len__(self) -> int:
        return len(self._profiles)

    def __iter__(self):
        return iter(list(self._profiles.values()))

    def get(self, profile_id: str) -> Optional[ConnectionProfile]:
        return self._profiles.get(profile_id)

    def find_by_name(self, name: str) -> Optional[ConnectionProfile]:
        for profile in self._profiles.values():
            if profile.name == name:
                return profile
        return None

    def add_listener(self, listener: ProfileListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def add(self, profile: ConnectionProfile) -> ConnectionProfile:
        profile.validate()
        event = PROFILE_UPDATED if profile.id in self._profiles else PROFILE_ADDED
        self._profiles[profile.id] = profile
        self._notify(event, profile)
        return profile

    def update(self, profile: ConnectionProfile) -> ConnectionProfile:
        if profile.id not in self._profiles:
            raise ProfileError(f"Unknown profile {profile.id}")
        return self.add(profile)

    def remove(self, profile_id: str) -> Optional[ConnectionProfile]:
        profile = self._profiles.pop(profile_id, None)
        if profile is not None:
            self._notify(PROFILE_REMOVED, profile)
        return profile

    def merge(self, profiles: Iterable[ConnectionProfile]) -> int:
        """Add imported *profiles*; one with a known name replaces the old entry.

        Returns the number of profiles stored.
        """
        count = 0
        for profile in profiles:
            existing = self.find_by_name(profile.name)
            if existing is not None:
                profile.id = existing.id
            try:
                self.add(profile)
            except ProfileError as err:
                _LOGGER.warning("Skipping imported profile: %s", err)
                continue
            count += 1
        return count

    def import_text(self, text: str) -> int:
        """Import ssh config text or a JSON array into the store."""
        return self.merge(import_profiles(text))

    def to_json(self, include_secrets: bool = False) -> str:
        data = []
        for profile in self._profiles.values():
            entry = profile.to_dict()
            if not include_secrets:
                for key in TO_REDACT:
                    entry.pop(key, None)
            data.append(entry)
        return json.dumps(data, indent=2)

    def _notify(self, event: str, profile: ConnectionProfile) -> None:
        for listener in list(self._listeners):
            listener(event, profile)
