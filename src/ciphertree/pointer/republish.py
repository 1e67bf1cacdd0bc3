"""
Hand-off to the trusted republishing collaborator.

Pointer records expire, so a collaborator re-signs them while the owner is
offline. It only ever receives the signing key ECIES-wrapped to its own
public key, and it unwraps that key just long enough to sign one record.
"""
import logging

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict

from ciphertree.config import Settings, get_settings
from ciphertree.crypto.ecies import unwrap_key, wrap_key
from ciphertree.crypto.keys import zeroize
from ciphertree.crypto.signing import SigningKeypair, signing_keypair_from_seed
from ciphertree.errors import ConsistencyError, NamingLayerError
from ciphertree.pointer.protocol import NamingLayer
from ciphertree.pointer.records import PointerRecord, build_pointer_record, derive_pointer_name, marshal_record

logger = logging.getLogger(__name__)


@dataclass
class RepublishEnrollment:
    pointer_name: str
    wrapped_signing_key: bytes
    key_epoch: int
    latest_value: str
    sequence: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pointerName": self.pointer_name,
            "wrappedSigningKey": self.wrapped_signing_key.hex(),
            "keyEpoch": self.key_epoch,
            "latestValue": self.latest_value,
            "sequence": self.sequence,
        }

    @staticmethod
    def from_dict(obj: Dict[str, Any]) -> "RepublishEnrollment":
        return RepublishEnrollment(
            pointer_name=obj["pointerName"],
            wrapped_signing_key=bytes.fromhex(obj["wrappedSigningKey"]),
            key_epoch=obj["keyEpoch"],
            latest_value=obj["latestValue"],
            sequence=obj["sequence"],
        )


class RepublishCollaborator(ABC):
    @abstractmethod
    def submit_wrapped_signing_key(self, enrollment: RepublishEnrollment) -> bool:
        pass


def enroll_for_republish(
    collaborator: RepublishCollaborator,
    collaborator_public_key: bytes,
    keypair: SigningKeypair,
    record: PointerRecord,
    key_epoch: int = 1,
) -> RepublishEnrollment:
    """Register ``record`` for periodic republishing."""
    enrollment = RepublishEnrollment(
        pointer_name=record.name,
        wrapped_signing_key=wrap_key(keypair.private_key, collaborator_public_key),
        key_epoch=key_epoch,
        latest_value=record.value,
        sequence=record.sequence,
    )
    if not collaborator.submit_wrapped_signing_key(enrollment):
        raise NamingLayerError(f"Republish enrollment for {record.name} was refused")
    logger.debug(f"Enrolled {record.name} for republishing at seq {record.sequence}")
    return enrollment


def republish_entry(
    enrollment: RepublishEnrollment,
    collaborator_private_key: bytes,
    naming: NamingLayer,
    settings: Settings | None = None,
) -> PointerRecord:
    """Re-sign the enrolled value at the next sequence with the long lifetime."""
    settings = settings or get_settings()
    seed = None
    keypair = None
    try:
        seed = unwrap_key(enrollment.wrapped_signing_key, collaborator_private_key)
        keypair = signing_keypair_from_seed(seed)
        if derive_pointer_name(keypair.public_key) != enrollment.pointer_name:
            raise ConsistencyError(f"Enrolled key does not own {enrollment.pointer_name}")
        record = build_pointer_record(
            keypair, enrollment.latest_value, enrollment.sequence + 1, settings.republish_lifetime_ms
        )
        naming.submit(enrollment.pointer_name, marshal_record(record))
    finally:
        zeroize(seed)
        if keypair is not None:
            keypair.close()
    enrollment.sequence = record.sequence
    logger.info(f"Republished {enrollment.pointer_name} seq {record.sequence}")
    return record
