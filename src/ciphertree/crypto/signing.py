"""Ed25519 keypairs for authenticating pointer records."""
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

from ciphertree.crypto.hash import HKDF_SALT, derive_key
from ciphertree.crypto.keys import zeroize
from ciphertree.errors import CryptoError

ED25519_PUBLIC_KEY_SIZE = 32
ED25519_PRIVATE_KEY_SIZE = 32
ED25519_SIGNATURE_SIZE = 64

VAULT_POINTER_INFO = "ciphertree-vault-pointer-v1"
FILE_POINTER_INFO = "ciphertree-file-pointer-v1"
MIN_FILE_ID_LENGTH = 10


@dataclass
class SigningKeypair:
    public_key: bytes       # 32 bytes
    private_key: bytearray  # 32-byte seed

    def close(self) -> None:
        zeroize(self.private_key)


def _raw_public(key: Ed25519PrivateKey) -> bytes:
    return key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


def generate_signing_keypair() -> SigningKeypair:
    key = Ed25519PrivateKey.generate()
    seed = key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    return SigningKeypair(public_key=_raw_public(key), private_key=bytearray(seed))


def signing_keypair_from_seed(seed: bytes) -> SigningKeypair:
    if len(seed) != ED25519_PRIVATE_KEY_SIZE:
        raise CryptoError("Signing failed", "INVALID_PRIVATE_KEY")
    key = Ed25519PrivateKey.from_private_bytes(bytes(seed))
    return SigningKeypair(public_key=_raw_public(key), private_key=bytearray(seed))


def sign(message: bytes, private_key: bytes) -> bytes:
    if len(private_key) != ED25519_PRIVATE_KEY_SIZE:
        raise CryptoError("Signing failed", "INVALID_PRIVATE_KEY")
    try:
        return Ed25519PrivateKey.from_private_bytes(bytes(private_key)).sign(message)
    except Exception:
        raise CryptoError("Signing failed", "SIGNING_FAILED") from None


def verify(signature: bytes, message: bytes, public_key: bytes) -> bool:
    """True only for a valid signature. Never raises."""
    if len(signature) != ED25519_SIGNATURE_SIZE or len(public_key) != ED25519_PUBLIC_KEY_SIZE:
        return False
    try:
        Ed25519PublicKey.from_public_bytes(bytes(public_key)).verify(bytes(signature), message)
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def _derived_keypair(user_private_key: bytes, info: str) -> SigningKeypair:
    seed = derive_key(user_private_key, HKDF_SALT, info.encode("utf-8"))
    try:
        return signing_keypair_from_seed(seed)
    finally:
        zeroize(seed)


def derive_vault_signing_keypair(user_private_key: bytes) -> SigningKeypair:
    """Root pointer keypair: recoverable from the user's private key alone."""
    if len(user_private_key) != 32:
        raise CryptoError("Key derivation failed", "INVALID_KEY_SIZE")
    return _derived_keypair(user_private_key, VAULT_POINTER_INFO)


def derive_file_signing_keypair(user_private_key: bytes, file_id: str) -> SigningKeypair:
    """Per-file pointer keypair; the file id in the HKDF info separates files."""
    if len(user_private_key) != 32:
        raise CryptoError("Key derivation failed", "INVALID_KEY_SIZE")
    if not file_id or len(file_id) < MIN_FILE_ID_LENGTH:
        raise ValueError(f"file id must be at least {MIN_FILE_ID_LENGTH} characters")
    return _derived_keypair(user_private_key, f"{FILE_POINTER_INFO}:{file_id}")
