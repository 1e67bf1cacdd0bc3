"""
Signed mutable-pointer records.

A record maps a pointer name (derived from an Ed25519 public key) to a
content address. The signed payload is canonical JSON
``{"sequence", "validity", "value"}``; the signature covers
``b"ipns-signature:" + payload``. On the wire a record is JSON with the
signature fields base64-encoded:

    {"value": ..., "sequence": n, "signature": b64, "signedPayload": b64, "publicKey": b64}
"""
import base64
import binascii
import json

from dataclasses import dataclass
from typing import Any, Dict

from ciphertree.crypto.signing import ED25519_PUBLIC_KEY_SIZE, SigningKeypair, sign, verify
from ciphertree.errors import StaleSequenceError, ValidationError
from ciphertree.utils.codec import ResolutionPayload, parse_signed_payload, validate_resolution_payload
from ciphertree.utils.helper import now_ms

SIGNATURE_PREFIX = b"ipns-signature:"

SOURCE_FRESH = "fresh"
SOURCE_CACHE = "cache"

# CIDv1, libp2p-key codec, identity multihash over protobuf(KeyType=Ed25519, Data=<32 bytes>)
_NAME_PREFIX = bytes([0x01, 0x72, 0x00, 0x24, 0x08, 0x01, 0x12, 0x20])
_MULTIBASE_BASE32 = "b"


@dataclass
class PointerRecord:
    name: str
    value: str
    sequence: int
    validity: int | None = None
    signature: bytes | None = None
    signed_payload: bytes | None = None
    public_key: bytes | None = None
    source: str = SOURCE_FRESH
    verified: bool = False

    @property
    def is_provisional(self) -> bool:
        return not self.verified

    @property
    def has_signature(self) -> bool:
        return self.signature is not None


def _canonical(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def derive_pointer_name(public_key: bytes) -> str:
    if len(public_key) != ED25519_PUBLIC_KEY_SIZE:
        raise ValidationError("Invalid pointer key: expected 32-byte Ed25519 public key")
    encoded = base64.b32encode(_NAME_PREFIX + bytes(public_key)).decode("ascii")
    return _MULTIBASE_BASE32 + encoded.lower().rstrip("=")


def public_key_from_pointer_name(name: str) -> bytes:
    if not name.startswith(_MULTIBASE_BASE32):
        raise ValidationError("Invalid pointer name: unsupported multibase prefix")
    body = name[1:].upper()
    body += "=" * (-len(body) % 8)
    try:
        raw = base64.b32decode(body)
    except (binascii.Error, ValueError):
        raise ValidationError("Invalid pointer name: not base32") from None
    if not raw.startswith(_NAME_PREFIX) or len(raw) != len(_NAME_PREFIX) + ED25519_PUBLIC_KEY_SIZE:
        raise ValidationError("Invalid pointer name: not an Ed25519 libp2p key")
    return raw[len(_NAME_PREFIX):]


def build_pointer_record(keypair: SigningKeypair, value: str, sequence: int, lifetime_ms: int) -> PointerRecord:
    """Sign ``value`` at ``sequence``. Raises CryptoError if signing fails."""
    if sequence < 0:
        raise ValueError("sequence must be non-negative")
    validity = now_ms() + lifetime_ms
    payload = _canonical({"value": value, "sequence": sequence, "validity": validity})
    signature = sign(SIGNATURE_PREFIX + payload, keypair.private_key)
    return PointerRecord(
        name=derive_pointer_name(keypair.public_key),
        value=value,
        sequence=sequence,
        validity=validity,
        signature=signature,
        signed_payload=payload,
        public_key=bytes(keypair.public_key),
        verified=True,
    )


def verify_pointer_record(record: PointerRecord) -> bool:
    """True when the signature is valid, the payload matches the record and
    the key is the one the pointer name was derived from. Never raises."""
    if record.signature is None or record.signed_payload is None or record.public_key is None:
        return False
    if not verify(record.signature, SIGNATURE_PREFIX + record.signed_payload, record.public_key):
        return False
    try:
        signed = parse_signed_payload(record.signed_payload)
        expected_key = public_key_from_pointer_name(record.name)
    except ValidationError:
        return False
    if signed["value"] != record.value or signed["sequence"] != record.sequence:
        return False
    return expected_key == record.public_key


def record_from_payload(name: str, payload: ResolutionPayload, source: str) -> PointerRecord:
    record = PointerRecord(name=name, value=payload.value, sequence=payload.sequence, source=source)
    if payload.bundle is not None:
        record.signature = payload.bundle.signature
        record.signed_payload = payload.bundle.signed_payload
        record.public_key = payload.bundle.public_key
        record.validity = parse_signed_payload(payload.bundle.signed_payload)["validity"]
    return record


def marshal_record(record: PointerRecord) -> bytes:
    obj: Dict[str, Any] = {"value": record.value, "sequence": record.sequence}
    if record.has_signature:
        obj["signature"] = base64.b64encode(record.signature).decode("ascii")
        obj["signedPayload"] = base64.b64encode(record.signed_payload).decode("ascii")
        obj["publicKey"] = base64.b64encode(record.public_key).decode("ascii")
    return json.dumps(obj, separators=(",", ":")).encode("utf-8")


def unmarshal_record(name: str, data: bytes, source: str = SOURCE_FRESH) -> PointerRecord:
    """Parse a wire record. The result is unverified until checked."""
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid pointer record: not JSON") from None
    return record_from_payload(name, validate_resolution_payload(obj), source)


def ensure_sequence_advances(candidate: int, last_known: int | None) -> None:
    """Reject ``candidate`` unless it is strictly above ``last_known``."""
    if last_known is not None and candidate <= last_known:
        raise StaleSequenceError(candidate, last_known)
