"""Transfer and endpoint configuration.

Configuration values are built once at the edge of the program and passed
into orchestrators; nothing in the transfer pipeline reads the environment
on its own.
"""

from __future__ import annotations

import base64
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from .defaults import (
    DEFAULT_THRESHOLD,
    MAX_SESSION_TTL_MINUTES,
    PROGRAM_ID,
    SESSION_TTL_MINUTES,
)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse an environment flag."""
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Not a boolean flag: {value!r}")


@dataclass(frozen=True)
class TransferConfig:
    """Behavior of one transfer pipeline.

    Attributes:
        skip_encryption: Bypass the threshold network; framed bytes are
            stored and fetched as-is.
        skip_remote_storage: Bypass the blob store; a local in-process store
            synthesizes references and content.
        threshold: Key servers that must answer before shares combine
        program_id: On-ledger program the capability objects belong to
        session_ttl_minutes: Lifetime of a session credential
        default_grant_ttl_seconds: Expiry applied to grants declared without
            one (None means the grant never expires)
    """

    skip_encryption: bool = False
    skip_remote_storage: bool = False
    threshold: int = DEFAULT_THRESHOLD
    program_id: str = PROGRAM_ID
    session_ttl_minutes: int = SESSION_TTL_MINUTES
    default_grant_ttl_seconds: int | None = None

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ValueError("threshold must be at least 1")
        if not 1 <= self.session_ttl_minutes <= MAX_SESSION_TTL_MINUTES:
            raise ValueError(
                f"session_ttl_minutes must be between 1 and {MAX_SESSION_TTL_MINUTES}"
            )
        if self.default_grant_ttl_seconds is not None and self.default_grant_ttl_seconds <= 0:
            raise ValueError("default_grant_ttl_seconds must be positive")

    @property
    def degraded(self) -> bool:
        """Whether any external service is bypassed."""
        return self.skip_encryption or self.skip_remote_storage

    def describe(self) -> str:
        """Name exactly the active degraded modes, for user-facing messages."""
        modes = []
        if self.skip_encryption:
            modes.append("encryption skipped")
        if self.skip_remote_storage:
            modes.append("remote storage skipped")
        return ", ".join(modes) if modes else "full mode"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> TransferConfig:
        """Build a configuration from ``CAPSHARE_*`` variables."""
        env = os.environ if environ is None else environ
        grant_ttl = env.get("CAPSHARE_DEFAULT_GRANT_TTL")
        return cls(
            skip_encryption=parse_bool(env.get("CAPSHARE_SKIP_ENCRYPTION")),
            skip_remote_storage=parse_bool(env.get("CAPSHARE_SKIP_REMOTE_STORAGE")),
            threshold=int(env.get("CAPSHARE_THRESHOLD", DEFAULT_THRESHOLD)),
            program_id=env.get("CAPSHARE_PROGRAM_ID", PROGRAM_ID),
            session_ttl_minutes=int(env.get("CAPSHARE_SESSION_TTL_MINUTES", SESSION_TTL_MINUTES)),
            default_grant_ttl_seconds=int(grant_ttl) if grant_ttl else None,
        )


@dataclass(frozen=True)
class KeyServerInfo:
    """Public description of one threshold key server."""

    server_id: str
    public_key: bytes  # X25519, raw 32 bytes
    url: str | None = None

    def __post_init__(self) -> None:
        if len(self.public_key) != 32:
            raise ValueError(f"Key server {self.server_id} public key must be 32 bytes")

    def to_dict(self) -> dict[str, str | None]:
        return {
            "server_id": self.server_id,
            "public_key": base64.b64encode(self.public_key).decode("ascii"),
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, str]) -> KeyServerInfo:
        return cls(
            server_id=data["server_id"],
            public_key=base64.b64decode(data["public_key"]),
            url=data.get("url"),
        )


@dataclass
class EndpointConfig:
    """Where the ledger, blob store and key servers live."""

    ledger_url: str = ""
    blob_publisher_url: str = ""
    blob_aggregator_url: str = ""
    key_servers: list[KeyServerInfo] = field(default_factory=list)
    base_url: str = ""  # Origin for shareable links

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EndpointConfig:
        """Build endpoints from ``CAPSHARE_*`` variables.

        ``CAPSHARE_KEY_SERVERS`` is a JSON list of
        ``{"server_id", "public_key" (base64), "url"}`` objects.
        """
        env = os.environ if environ is None else environ
        raw_servers = env.get("CAPSHARE_KEY_SERVERS", "")
        servers = [KeyServerInfo.from_dict(s) for s in json.loads(raw_servers)] if raw_servers else []
        return cls(
            ledger_url=env.get("CAPSHARE_LEDGER_URL", ""),
            blob_publisher_url=env.get("CAPSHARE_BLOB_PUBLISHER", ""),
            blob_aggregator_url=env.get("CAPSHARE_BLOB_AGGREGATOR", ""),
            key_servers=servers,
            base_url=env.get("CAPSHARE_BASE_URL", ""),
        )
