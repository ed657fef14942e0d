"""Ledger-side data model: capability objects, effects and inspect results."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..defaults import CAPABILITY_TYPE_NAME, NEVER_EXPIRES
from ..errors import CapabilityIdNotFound
from ..identity import EncryptionIdentity
from ..signing import normalize_address

logger = logging.getLogger(__name__)


@dataclass
class CapabilityObject:
    """The on-ledger record deciding who may download one encrypted file.

    Attributes:
        capability_id: Ledger object id, assigned at creation
        blob_reference: Blob-store handle of the encrypted payload
        encryption_identity: Identity the payload was encrypted under
        is_public: Every actor passes evaluation when set
        grants: Address -> absolute expiry in ledger milliseconds (0 = never)
        admin: Address allowed to mutate grants
        version: Object version, bumped once per mutating transaction
        shared: Whether the object is readable by every actor
        blob_reference_overridden: The one-time legacy override was used
    """

    capability_id: str
    blob_reference: str
    encryption_identity: EncryptionIdentity
    is_public: bool
    grants: dict[str, int] = field(default_factory=dict)
    admin: str = ""
    version: int = 1
    shared: bool = False
    blob_reference_overridden: bool = False

    def can_download(self, address: str, now_ms: int) -> bool:
        """The approval predicate, evaluated against the ledger clock."""
        if self.is_public:
            return True
        expires_at = self.grants.get(normalize_address(address))
        if expires_at is None:
            return False
        return expires_at == NEVER_EXPIRES or now_ms < expires_at

    def to_fields(self) -> dict[str, Any]:
        """Encode as the ledger's object content fields."""
        return {
            "id": self.capability_id,
            "blob_id": self.blob_reference,
            "encryption_id": self.encryption_identity.as_vector(),
            "is_public": self.is_public,
            "access_list": dict(self.grants),
            "admin": self.admin,
            "blob_id_overridden": self.blob_reference_overridden,
        }

    @classmethod
    def from_fields(
        cls,
        fields: dict[str, Any],
        version: int = 1,
        shared: bool = True,
    ) -> CapabilityObject:
        """Decode the ledger's object content fields.

        Raises:
            ValueError: If a field is missing or has the wrong shape
        """
        try:
            grants = {
                normalize_address(address): int(expires_at)
                for address, expires_at in fields.get("access_list", {}).items()
            }
            is_public = fields["is_public"]
            if not isinstance(is_public, bool):
                raise ValueError("is_public must be a boolean")
            return cls(
                capability_id=normalize_address(fields["id"]),
                blob_reference=str(fields["blob_id"]),
                encryption_identity=EncryptionIdentity.from_vector(fields["encryption_id"]),
                is_public=is_public,
                grants=grants,
                admin=normalize_address(fields["admin"]) if fields.get("admin") else "",
                version=version,
                shared=shared,
                blob_reference_overridden=bool(fields.get("blob_id_overridden", False)),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Malformed capability object fields: {e}") from e


@dataclass
class ObjectChange:
    """One entry of a committed transaction's object-change record."""

    type: str  # "created", "mutated", ...
    object_type: str | None = None
    object_id: str | None = None
    version: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ObjectChange:
        version = data.get("version")
        return cls(
            type=data.get("type", ""),
            object_type=data.get("objectType"),
            object_id=data.get("objectId"),
            version=int(version) if version is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "objectType": self.object_type,
            "objectId": self.object_id,
            "version": self.version,
        }


@dataclass
class TransactionEffects:
    """Confirmation of a committed transaction."""

    digest: str
    status: str = "success"
    object_changes: list[ObjectChange] = field(default_factory=list)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransactionEffects:
        status = data.get("effects", {}).get("status", {})
        return cls(
            digest=data["digest"],
            status=status.get("status", "success"),
            object_changes=[ObjectChange.from_dict(c) for c in data.get("objectChanges", [])],
            error=status.get("error"),
        )


@dataclass
class InspectResult:
    """Outcome of a non-committing execution.

    ``return_values`` holds, per command, a list of ``(bytes, type)`` pairs.
    """

    return_values: list[list[tuple[list[int], str]]] = field(default_factory=list)
    error: str | None = None


def matches_capability_type(object_type: str | None, type_name: str = CAPABILITY_TYPE_NAME) -> bool:
    """Whether a declared object type names the capability struct."""
    if not object_type:
        return False
    base = object_type.split("<", 1)[0]
    return base.endswith(f"::{type_name}")


def extract_capability_id(
    changes: list[ObjectChange],
    type_name: str = CAPABILITY_TYPE_NAME,
) -> str:
    """Find the newly created capability object in an object-change record.

    Raises:
        CapabilityIdNotFound: If no created object has the capability type
    """
    for change in changes:
        if change.type == "created" and matches_capability_type(change.object_type, type_name):
            if change.object_id:
                return change.object_id
    logger.error(f"No created {type_name} object among {len(changes)} object changes")
    raise CapabilityIdNotFound(f"Transaction committed but created no {type_name} object")
