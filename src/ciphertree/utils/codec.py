"""
Metadata codec: strict validation and AES-256-GCM encryption of folder and
file metadata, plus validation of naming-layer resolution payloads.

Validation never repairs. A document is either fully valid for one schema
version or rejected whole with ValidationError.
"""
import base64
import binascii
import json
import logging

from dataclasses import dataclass
from typing import Any, Dict, List

from ciphertree.crypto.aead import AES_IV_SIZE, aead_decrypt, aead_encrypt_with_iv
from ciphertree.crypto.keys import generate_iv
from ciphertree.crypto.signing import ED25519_PUBLIC_KEY_SIZE, ED25519_SIGNATURE_SIZE
from ciphertree.errors import ValidationError
from ciphertree.utils.dataModels import (
    ENCRYPTION_MODES,
    FILE_SCHEMA_V1,
    FOLDER_SCHEMA_V1,
    FOLDER_SCHEMA_V2,
    ITEM_FILE,
    ITEM_FOLDER,
    AnyFolderMetadata,
    EncryptedBlob,
    FileEntry,
    FileMetadata,
    FilePointer,
    FolderEntry,
    FolderMetadataV1,
    FolderMetadataV2,
    VersionEntry,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------

def encrypt_metadata(document: Any, key: bytes) -> EncryptedBlob:
    """Serialize ``document`` (dict or model with to_dict) and seal it under ``key``."""
    obj = document.to_dict() if hasattr(document, "to_dict") else document
    plaintext = json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    iv = generate_iv()
    ct = aead_encrypt_with_iv(key, plaintext, iv)
    return EncryptedBlob(iv=iv.hex(), data=base64.b64encode(ct).decode("ascii"))


def decrypt_metadata(blob: EncryptedBlob, key: bytes) -> Dict[str, Any]:
    """Open a metadata blob. Bad tag -> CryptoError, bad JSON -> ValidationError."""
    try:
        iv = blob.iv_bytes
        ct = blob.ciphertext
    except (ValueError, binascii.Error):
        raise ValidationError("Invalid encrypted blob: bad iv or data encoding") from None
    plaintext = aead_decrypt(key, iv, ct)
    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid metadata format: not valid JSON") from None


def parse_blob(data: bytes) -> EncryptedBlob:
    """Parse the ``{iv, data}`` envelope fetched from the content store."""
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid encrypted blob: not JSON") from None
    if not isinstance(obj, dict) or not isinstance(obj.get("iv"), str) or not isinstance(obj.get("data"), str):
        raise ValidationError("Invalid encrypted blob: iv and data must be strings")
    if len(obj["iv"]) != AES_IV_SIZE * 2:
        raise ValidationError("Invalid encrypted blob: iv must be 12 bytes")
    return EncryptedBlob(iv=obj["iv"], data=obj["data"])


def decrypt_folder_metadata(blob: EncryptedBlob, key: bytes) -> AnyFolderMetadata:
    return validate_folder_metadata(decrypt_metadata(blob, key))


def decrypt_file_metadata(blob: EncryptedBlob, key: bytes) -> FileMetadata:
    return validate_file_metadata(decrypt_metadata(blob, key))


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _str(obj: Dict[str, Any], key: str, where: str) -> str:
    v = obj.get(key)
    if not isinstance(v, str):
        raise ValidationError(f"Invalid {where}: {key} must be string")
    return v


def _int(obj: Dict[str, Any], key: str, where: str) -> int:
    v = obj.get(key)
    # bool is an int subclass; reject it explicitly
    if not isinstance(v, int) or isinstance(v, bool):
        raise ValidationError(f"Invalid {where}: {key} must be integer")
    return v


def _mode(obj: Dict[str, Any], where: str, required: bool) -> str:
    v = obj.get("encryptionMode")
    if v is None and not required:
        return "GCM"
    if v not in ENCRYPTION_MODES:
        raise ValidationError(f"Invalid {where}: encryptionMode must be GCM or CTR")
    return v


# ---------------------------------------------------------------------------
# Folder metadata
# ---------------------------------------------------------------------------

def child_schema_version(child: Dict[str, Any]) -> str | None:
    """Schema version a child's shape belongs to. Folder entries fit both (None)."""
    if child.get("type") == ITEM_FOLDER:
        return None
    has_pointer = "fileMetaPointerName" in child
    has_inline = "cid" in child
    if has_pointer and not has_inline:
        return FOLDER_SCHEMA_V2
    if has_inline and not has_pointer:
        return FOLDER_SCHEMA_V1
    raise ValidationError("Invalid folder metadata: file child matches no single schema version")


def _folder_entry(c: Dict[str, Any]) -> FolderEntry:
    where = "folder entry"
    return FolderEntry(
        id=_str(c, "id", where),
        name=_str(c, "name", where),
        pointer_name=_str(c, "pointerName", where),
        signing_key_encrypted=_str(c, "signingKeyEncrypted", where),
        folder_key_encrypted=_str(c, "folderKeyEncrypted", where),
        created_at=_int(c, "createdAt", where),
        modified_at=_int(c, "modifiedAt", where),
    )


def _file_pointer(c: Dict[str, Any]) -> FilePointer:
    where = "file pointer"
    return FilePointer(
        id=_str(c, "id", where),
        name=_str(c, "name", where),
        file_meta_pointer_name=_str(c, "fileMetaPointerName", where),
        created_at=_int(c, "createdAt", where),
        modified_at=_int(c, "modifiedAt", where),
    )


def _file_entry(c: Dict[str, Any]) -> FileEntry:
    where = "file entry"
    return FileEntry(
        id=_str(c, "id", where),
        name=_str(c, "name", where),
        cid=_str(c, "cid", where),
        file_key_encrypted=_str(c, "fileKeyEncrypted", where),
        file_iv=_str(c, "fileIv", where),
        size=_int(c, "size", where),
        mime_type=_str(c, "mimeType", where),
        created_at=_int(c, "createdAt", where),
        modified_at=_int(c, "modifiedAt", where),
        encryption_mode=_mode(c, where, required=False),
    )


def validate_folder_metadata(obj: Any) -> AnyFolderMetadata:
    if not isinstance(obj, dict):
        raise ValidationError("Invalid folder metadata: not an object")
    version = obj.get("version")
    if version not in (FOLDER_SCHEMA_V1, FOLDER_SCHEMA_V2):
        raise ValidationError("Invalid folder metadata: unsupported version")
    children = obj.get("children")
    if not isinstance(children, list):
        raise ValidationError("Invalid folder metadata: children must be array")

    seen = set()
    for child in children:
        if not isinstance(child, dict):
            raise ValidationError("Invalid folder metadata: invalid child entry")
        if child.get("type") not in (ITEM_FILE, ITEM_FOLDER):
            raise ValidationError("Invalid folder metadata: unknown child type")
        if not isinstance(child.get("id"), str) or not isinstance(child.get("name"), str):
            raise ValidationError("Invalid folder metadata: missing id or name")
        shape = child_schema_version(child)
        if shape is not None:
            seen.add(shape)
    if len(seen) > 1:
        raise ValidationError("Invalid folder metadata: children mix schema versions")
    if seen and seen != {version}:
        raise ValidationError("Invalid folder metadata: children do not match document version")

    if version == FOLDER_SCHEMA_V2:
        typed: List[Any] = [
            _folder_entry(c) if c["type"] == ITEM_FOLDER else _file_pointer(c) for c in children
        ]
        return FolderMetadataV2(children=typed)
    elif version == FOLDER_SCHEMA_V1:
        typed = [_folder_entry(c) if c["type"] == ITEM_FOLDER else _file_entry(c) for c in children]
        return FolderMetadataV1(children=typed)
    raise ValidationError(f"Invalid folder metadata: no reader for version {version}")


# ---------------------------------------------------------------------------
# File metadata
# ---------------------------------------------------------------------------

def _version_entry(entry: Any, index: int) -> VersionEntry:
    where = f"file metadata versionHistory[{index}]"
    if not isinstance(entry, dict):
        raise ValidationError(f"Invalid {where}: not an object")
    return VersionEntry(
        cid=_str(entry, "cid", where),
        file_key_encrypted=_str(entry, "fileKeyEncrypted", where),
        file_iv=_str(entry, "fileIv", where),
        size=_int(entry, "size", where),
        timestamp=_int(entry, "timestamp", where),
        encryption_mode=_mode(entry, where, required=True),
    )


def validate_file_metadata(obj: Any) -> FileMetadata:
    where = "file metadata"
    if not isinstance(obj, dict):
        raise ValidationError(f"Invalid {where}: not an object")
    if obj.get("version") != FILE_SCHEMA_V1:
        raise ValidationError(f"Invalid {where}: unsupported version")

    history: List[VersionEntry] = []
    raw_history = obj.get("versionHistory")
    if raw_history is not None:
        if not isinstance(raw_history, list):
            raise ValidationError(f"Invalid {where}: versionHistory must be an array")
        history = [_version_entry(e, i) for i, e in enumerate(raw_history)]

    return FileMetadata(
        cid=_str(obj, "cid", where),
        file_key_encrypted=_str(obj, "fileKeyEncrypted", where),
        file_iv=_str(obj, "fileIv", where),
        size=_int(obj, "size", where),
        mime_type=_str(obj, "mimeType", where),
        created_at=_int(obj, "createdAt", where),
        modified_at=_int(obj, "modifiedAt", where),
        encryption_mode=_mode(obj, where, required=False),
        version_history=history,
    )


# ---------------------------------------------------------------------------
# Resolution payloads
# ---------------------------------------------------------------------------

SIGNATURE_FIELDS = ("signature", "signedPayload", "publicKey")


@dataclass
class SignatureBundle:
    signature: bytes
    signed_payload: bytes
    public_key: bytes


@dataclass
class ResolutionPayload:
    value: str
    sequence: int
    bundle: SignatureBundle | None


def parse_signed_payload(data: bytes) -> Dict[str, Any]:
    """Decode the signed ``{value, sequence, validity}`` document."""
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid signed payload: not JSON") from None
    if not isinstance(obj, dict):
        raise ValidationError("Invalid signed payload: not an object")
    _str(obj, "value", "signed payload")
    if _int(obj, "sequence", "signed payload") < 0:
        raise ValidationError("Invalid signed payload: negative sequence")
    _int(obj, "validity", "signed payload")
    return obj


def _signature_bundle(obj: Dict[str, Any], value: str, sequence: int) -> SignatureBundle | None:
    present = [f for f in SIGNATURE_FIELDS if obj.get(f) is not None]
    if not present:
        return None
    if len(present) != len(SIGNATURE_FIELDS):
        logger.warning(f"Dropping partial signature bundle (present: {', '.join(present)})")
        return None
    try:
        signature = base64.b64decode(obj["signature"], validate=True)
        signed_payload = base64.b64decode(obj["signedPayload"], validate=True)
        public_key = base64.b64decode(obj["publicKey"], validate=True)
    except (TypeError, ValueError, binascii.Error):
        logger.warning("Dropping signature bundle with undecodable fields")
        return None
    if len(signature) != ED25519_SIGNATURE_SIZE or len(public_key) != ED25519_PUBLIC_KEY_SIZE:
        logger.warning("Dropping signature bundle with wrongly sized fields")
        return None
    try:
        signed = parse_signed_payload(signed_payload)
    except ValidationError:
        logger.warning("Dropping signature bundle with malformed signed payload")
        return None
    if signed["value"] != value or signed["sequence"] != sequence:
        logger.warning("Dropping signature bundle whose payload disagrees with the record")
        return None
    return SignatureBundle(signature=signature, signed_payload=signed_payload, public_key=public_key)


def validate_resolution_payload(obj: Any) -> ResolutionPayload:
    """Validate a naming-layer answer.

    ``value`` and ``sequence`` are required. The signature fields are
    all-or-nothing: unless every one is present, decodable and consistent with
    the record, the whole bundle is dropped and the record is provisional.
    """
    if not isinstance(obj, dict):
        raise ValidationError("Invalid resolution payload: not an object")
    value = _str(obj, "value", "resolution payload")
    sequence = _int(obj, "sequence", "resolution payload")
    if sequence < 0:
        raise ValidationError("Invalid resolution payload: negative sequence")
    return ResolutionPayload(value=value, sequence=sequence, bundle=_signature_bundle(obj, value, sequence))
