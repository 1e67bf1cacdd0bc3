"""Tests for metadata validation and encryption."""

import base64
import json

import pytest

from ciphertree.crypto.aead import aead_encrypt_with_iv
from ciphertree.crypto.keys import generate_folder_key, generate_iv
from ciphertree.crypto.signing import generate_signing_keypair, sign
from ciphertree.errors import CryptoError, ValidationError
from ciphertree.utils.codec import (
    decrypt_file_metadata,
    decrypt_folder_metadata,
    decrypt_metadata,
    encrypt_metadata,
    parse_blob,
    validate_file_metadata,
    validate_folder_metadata,
    validate_resolution_payload,
)
from ciphertree.utils.dataModels import (
    EncryptedBlob,
    FileMetadata,
    FilePointer,
    FolderEntry,
    FolderMetadataV1,
    FolderMetadataV2,
)


def folder_child(name="sub"):
    return {
        "type": "folder", "id": f"id-{name}", "name": name, "pointerName": "bafz",
        "signingKeyEncrypted": "aa", "folderKeyEncrypted": "bb", "createdAt": 1, "modifiedAt": 2,
    }


def v2_file_child(name="a.txt"):
    return {"type": "file", "id": f"id-{name}", "name": name, "fileMetaPointerName": "bafz", "createdAt": 1, "modifiedAt": 2}


def v1_file_child(name="b.txt"):
    return {
        "type": "file", "id": f"id-{name}", "name": name, "cid": "abc", "fileKeyEncrypted": "cc",
        "fileIv": "00" * 12, "size": 3, "mimeType": "text/plain", "createdAt": 1, "modifiedAt": 2,
    }


def file_meta(**overrides):
    obj = {
        "version": "v1", "cid": "abc", "fileKeyEncrypted": "cc", "fileIv": "00" * 12, "size": 3,
        "mimeType": "text/plain", "createdAt": 1, "modifiedAt": 2,
    }
    obj.update(overrides)
    return obj


class TestFolderMetadata:
    """Tests for the folder metadata tagged union."""

    def test_v2_document(self):
        meta = validate_folder_metadata({"version": "v2", "children": [folder_child(), v2_file_child()]})
        assert isinstance(meta, FolderMetadataV2)
        assert isinstance(meta.children[0], FolderEntry)
        assert isinstance(meta.children[1], FilePointer)
        assert meta.find("a.txt").file_meta_pointer_name == "bafz"

    def test_v1_document(self):
        meta = validate_folder_metadata({"version": "v1", "children": [folder_child(), v1_file_child()]})
        assert isinstance(meta, FolderMetadataV1)
        assert meta.children[1].encryption_mode == "GCM"

    def test_hybrid_document_rejected(self):
        doc = {"version": "v2", "children": [v2_file_child(), v1_file_child()]}
        with pytest.raises(ValidationError, match="mix"):
            validate_folder_metadata(doc)

    @pytest.mark.parametrize("version,child", [("v2", v1_file_child()), ("v1", v2_file_child())])
    def test_children_must_match_version(self, version, child):
        with pytest.raises(ValidationError):
            validate_folder_metadata({"version": version, "children": [child]})

    def test_file_child_with_both_shapes_rejected(self):
        child = dict(v1_file_child(), fileMetaPointerName="bafz")
        with pytest.raises(ValidationError):
            validate_folder_metadata({"version": "v2", "children": [child]})

    def test_folder_only_document_valid_in_both_versions(self):
        for version in ("v1", "v2"):
            meta = validate_folder_metadata({"version": version, "children": [folder_child()]})
            assert meta.version == version

    @pytest.mark.parametrize("doc", [
        None,
        [],
        {"version": "v3", "children": []},
        {"version": "v2"},
        {"version": "v2", "children": {}},
        {"version": "v2", "children": ["x"]},
        {"version": "v2", "children": [dict(folder_child(), type="link")]},
        {"version": "v2", "children": [dict(folder_child(), name=None)]},
        {"version": "v2", "children": [dict(folder_child(), createdAt="yesterday")]},
        {"version": "v2", "children": [dict(v2_file_child(), modifiedAt=True)]},
    ])
    def test_malformed_documents_rejected(self, doc):
        with pytest.raises(ValidationError):
            validate_folder_metadata(doc)

    def test_serialized_v2_validates(self):
        meta = FolderMetadataV2(children=[
            FolderEntry("f1", "docs", "bafz", "aa", "bb", 1, 2),
            FilePointer("f2", "a.txt", "bafy", 1, 2),
        ])
        assert validate_folder_metadata(meta.to_dict()) == meta


class TestFileMetadata:
    """Tests for file metadata validation."""

    def test_defaults_to_gcm(self):
        meta = validate_file_metadata(file_meta())
        assert meta.encryption_mode == "GCM"
        assert meta.version_history == []

    def test_version_history(self):
        entry = {"cid": "old", "fileKeyEncrypted": "dd", "fileIv": "11" * 12, "size": 1, "timestamp": 5, "encryptionMode": "CTR"}
        meta = validate_file_metadata(file_meta(encryptionMode="CTR", versionHistory=[entry]))
        assert meta.version_history[0].cid == "old"
        assert meta.version_history[0].encryption_mode == "CTR"

    @pytest.mark.parametrize("overrides", [
        {"version": "v2"},
        {"size": "3"},
        {"encryptionMode": "ECB"},
        {"versionHistory": {}},
        {"versionHistory": [{"cid": "old"}]},
        {"versionHistory": [{"cid": "old", "fileKeyEncrypted": "dd", "fileIv": "11", "size": 1, "timestamp": 5}]},
    ])
    def test_invalid_file_metadata(self, overrides):
        with pytest.raises(ValidationError):
            validate_file_metadata(file_meta(**overrides))


class TestMetadataEncryption:
    """Tests for sealing metadata documents."""

    def test_roundtrip(self):
        key = generate_folder_key()
        meta = FolderMetadataV2(children=[FilePointer("f2", "a.txt", "bafy", 1, 2)])
        blob = encrypt_metadata(meta, key)
        assert len(bytes.fromhex(blob.iv)) == 12
        assert decrypt_folder_metadata(parse_blob(blob.to_bytes()), key) == meta

    def test_file_metadata_roundtrip(self):
        key = generate_folder_key()
        meta = FileMetadata("abc", "cc", "00" * 12, 3, "text/plain", 1, 2)
        assert decrypt_file_metadata(encrypt_metadata(meta, key), key) == meta

    def test_wrong_key_is_crypto_error(self):
        blob = encrypt_metadata({"version": "v2", "children": []}, generate_folder_key())
        with pytest.raises(CryptoError):
            decrypt_metadata(blob, generate_folder_key())

    def test_non_json_plaintext_is_validation_error(self):
        key = generate_folder_key()
        iv = generate_iv()
        ct = aead_encrypt_with_iv(key, b"\xff not json", iv)
        blob = EncryptedBlob(iv=iv.hex(), data=base64.b64encode(ct).decode())
        with pytest.raises(ValidationError):
            decrypt_metadata(blob, key)

    @pytest.mark.parametrize("raw", [b"nope", b"[]", b'{"iv": "00", "data": "x"}', b'{"iv": 1, "data": "x"}'])
    def test_parse_blob_rejects_bad_envelopes(self, raw):
        with pytest.raises(ValidationError):
            parse_blob(raw)


def signed_answer(value="addr", sequence=3, keypair=None):
    keypair = keypair or generate_signing_keypair()
    payload = json.dumps({"sequence": sequence, "validity": 99, "value": value}, sort_keys=True).encode()
    signature = sign(b"ipns-signature:" + payload, keypair.private_key)
    return {
        "value": value,
        "sequence": sequence,
        "signature": base64.b64encode(signature).decode(),
        "signedPayload": base64.b64encode(payload).decode(),
        "publicKey": base64.b64encode(keypair.public_key).decode(),
    }


class TestResolutionPayload:
    """Tests for naming-layer answers and their signature bundle."""

    def test_cached_answer_has_no_bundle(self):
        payload = validate_resolution_payload({"value": "addr", "sequence": 0})
        assert payload.bundle is None

    def test_complete_bundle_kept(self):
        payload = validate_resolution_payload(signed_answer())
        assert payload.bundle is not None
        assert len(payload.bundle.signature) == 64
        assert len(payload.bundle.public_key) == 32

    @pytest.mark.parametrize("missing", ["publicKey", "signature", "signedPayload"])
    def test_partial_bundle_dropped_whole(self, missing):
        answer = signed_answer()
        del answer[missing]
        payload = validate_resolution_payload(answer)
        assert payload.value == "addr"
        assert payload.bundle is None

    def test_mismatched_signed_payload_dropped(self):
        answer = signed_answer(value="addr")
        answer["value"] = "forged"
        assert validate_resolution_payload(answer).bundle is None

    def test_wrong_size_public_key_dropped(self):
        answer = signed_answer()
        answer["publicKey"] = base64.b64encode(b"\x01" * 31).decode()
        assert validate_resolution_payload(answer).bundle is None

    @pytest.mark.parametrize("answer", [
        {"sequence": 1},
        {"value": "addr"},
        {"value": "addr", "sequence": -1},
        {"value": "addr", "sequence": "1"},
        "addr",
    ])
    def test_required_fields(self, answer):
        with pytest.raises(ValidationError):
            validate_resolution_payload(answer)
