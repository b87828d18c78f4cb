"""
profile persistence.

Profiles are stored as one JSON document carrying a schema version.
Older documents are upgraded once, at load time, by the functions in
MIGRATIONS; everything past load works on the current schema only.

    v1: flat credential fields, no auto rotation
    v2: adds behavior.auto_rotate_enabled
    v3: credentials become a tagged list of {kind, handle, usable}
"""

import json
import os
import tempfile
import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, Protocol

import structlog

from usagewarden.config import validate_profile
from usagewarden.errors import ConfigurationError, StoreError
from usagewarden.models import Profile, SourceKind

logger = structlog.get_logger()

SCHEMA_VERSION = 3


class CredentialProfileStore(Protocol):
    """
    CredentialProfileStore is the contract the coordinator uses to
    read profiles and write back cached tier and usage. snapshot()
    must return an immutable view that later saves do not alter.
    """

    def snapshot(self) -> "Sequence[Profile]": ...

    def save(self, profile: "Profile") -> "None": ...


def _v1_to_v2(profile: "dict[str, Any]") -> "dict[str, Any]":
    behavior = dict(profile.get("behavior", {}))
    behavior.setdefault("auto_rotate_enabled", False)
    return {**profile, "behavior": behavior}


# flat v2 credential field -> tagged source kind
_V2_CREDENTIAL_FIELDS: "list[tuple[str, SourceKind]]" = [
    ("session_key", SourceKind.WEB),
    ("api_session_key", SourceKind.API_CONSOLE),
    ("cli_credentials", SourceKind.CLI_OAUTH),
]


def _v2_to_v3(profile: "dict[str, Any]") -> "dict[str, Any]":
    migrated = {
        k: v for k, v in profile.items() if k not in dict(_V2_CREDENTIAL_FIELDS)
    }
    credentials = []
    for field_name, kind in _V2_CREDENTIAL_FIELDS:
        handle = profile.get(field_name)
        if handle:
            credentials.append({"kind": kind.value, "handle": handle, "usable": True})
    migrated["credentials"] = credentials
    return migrated


# version N -> function upgrading one profile from N to N + 1
MIGRATIONS: "dict[int, Callable[[dict[str, Any]], dict[str, Any]]]" = {
    1: _v1_to_v2,
    2: _v2_to_v3,
}


def migrate(document: "dict[str, Any]") -> "dict[str, Any]":
    """
    upgrades a profile document to SCHEMA_VERSION. Documents written
    by a newer version are rejected rather than guessed at.
    """
    version = int(document.get("schema_version", 1))
    if version > SCHEMA_VERSION:
        raise ConfigurationError(
            f"profile document has schema version {version}, "
            f"this build understands up to {SCHEMA_VERSION}"
        )

    profiles = list(document.get("profiles", []))
    while version < SCHEMA_VERSION:
        step = MIGRATIONS[version]
        profiles = [step(p) for p in profiles]
        logger.info("profiles_migrated", from_version=version, to_version=version + 1)
        version += 1

    return {"schema_version": version, "profiles": profiles}


class JsonProfileStore:
    """
    JsonProfileStore keeps profiles in a single JSON file. Every
    profile is validated on load and on save; malformed settings raise
    ConfigurationError instead of being coerced.
    """

    def __init__(self, path: "str | Path") -> "None":
        self._path = Path(path)
        self._lock: "threading.Lock" = threading.Lock()
        self._profiles: "tuple[Profile, ...]" = self._load()

    def snapshot(self) -> "tuple[Profile, ...]":
        # tuples of frozen profiles, so handing out the current one is safe
        with self._lock:
            return self._profiles

    def get(self, profile_id: "str") -> "Profile | None":
        for profile in self.snapshot():
            if profile.id == profile_id:
                return profile
        return None

    def save(self, profile: "Profile") -> "None":
        """
        inserts or replaces a profile and rewrites the file.
        """
        validate_profile(profile)
        with self._lock:
            profiles = list(self._profiles)
            for i, existing in enumerate(profiles):
                if existing.id == profile.id:
                    profiles[i] = profile
                    break
            else:
                profiles.append(profile)

            self._write(profiles)
            self._profiles = tuple(profiles)

        logger.debug("profile_saved", profile_id=profile.id)

    def _load(self) -> "tuple[Profile, ...]":
        if not self._path.exists():
            logger.info("profile_store_empty", path=str(self._path))
            return ()

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StoreError(f"failed to read profiles {self._path}: {exc}") from exc

        original_version = int(raw.get("schema_version", 1))
        document = migrate(raw)
        try:
            profiles = tuple(
                validate_profile(Profile.from_dict(p)) for p in document["profiles"]
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"malformed profile in {self._path}: {exc}"
            ) from exc

        # persist the upgrade once so later loads skip the migrations
        if original_version != SCHEMA_VERSION:
            self._write(list(profiles))

        logger.info("profiles_loaded", count=len(profiles), path=str(self._path))
        return profiles

    def _write(self, profiles: "list[Profile]") -> "None":
        document = {
            "schema_version": SCHEMA_VERSION,
            "profiles": [p.to_dict() for p in profiles],
        }
        directory = self._path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(document, fh, indent=2, sort_keys=True)
                os.replace(tmp, self._path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as exc:
            raise StoreError(f"failed to write profiles {self._path}: {exc}") from exc
