import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from typing import Tuple

from ciphertree.errors import CryptoError

AES_KEY_SIZE = 32
AES_IV_SIZE = 12
AES_TAG_SIZE = 16
AES_CTR_IV_SIZE = 16


def _check_key(key: bytes, message: str) -> None:
    if len(key) != AES_KEY_SIZE:
        raise CryptoError(message, "INVALID_KEY_SIZE")


def aead_encrypt(key: bytes, plaintext: bytes, aad: bytes | None = None) -> Tuple[bytes, bytes]:
    nonce = os.urandom(AES_IV_SIZE)
    return nonce, aead_encrypt_with_iv(key, plaintext, nonce, aad)


def aead_encrypt_with_iv(key: bytes, plaintext: bytes, nonce: bytes, aad: bytes | None = None) -> bytes:
    """AES-256-GCM under a caller-supplied IV. The IV must never repeat for a key."""
    _check_key(key, "Encryption failed")
    if len(nonce) != AES_IV_SIZE:
        raise CryptoError("Encryption failed", "INVALID_IV_SIZE")
    try:
        return AESGCM(bytes(key)).encrypt(nonce, plaintext, aad)
    except Exception:
        raise CryptoError("Encryption failed", "ENCRYPTION_FAILED") from None


def aead_decrypt(key: bytes, nonce: bytes, ct: bytes, aad: bytes | None = None) -> bytes:
    _check_key(key, "Decryption failed")
    if len(nonce) != AES_IV_SIZE:
        raise CryptoError("Decryption failed", "INVALID_IV_SIZE")
    if len(ct) < AES_TAG_SIZE:
        raise CryptoError("Decryption failed", "DECRYPTION_FAILED")
    try:
        return AESGCM(bytes(key)).decrypt(nonce, ct, aad)
    except (InvalidTag, ValueError):
        # Wrong key, wrong IV and tampered data all look the same to callers
        raise CryptoError("Decryption failed", "DECRYPTION_FAILED") from None


def seal(key: bytes, plaintext: bytes) -> bytes:
    """nonce || ct, the blob layout used for file content."""
    nonce, ct = aead_encrypt(key, plaintext)
    return nonce + ct


def unseal(key: bytes, sealed: bytes) -> bytes:
    if len(sealed) < AES_IV_SIZE + AES_TAG_SIZE:
        raise CryptoError("Decryption failed", "DECRYPTION_FAILED")
    return aead_decrypt(key, sealed[:AES_IV_SIZE], sealed[AES_IV_SIZE:])


def ctr_encrypt(key: bytes, plaintext: bytes, iv: bytes) -> bytes:
    """AES-256-CTR for seekable media. No integrity, content address covers it."""
    _check_key(key, "Encryption failed")
    if len(iv) != AES_CTR_IV_SIZE:
        raise CryptoError("Encryption failed", "INVALID_IV_SIZE")
    encryptor = Cipher(algorithms.AES(bytes(key)), modes.CTR(iv)).encryptor()
    return encryptor.update(plaintext) + encryptor.finalize()


def ctr_decrypt(key: bytes, ciphertext: bytes, iv: bytes) -> bytes:
    _check_key(key, "Decryption failed")
    if len(iv) != AES_CTR_IV_SIZE:
        raise CryptoError("Decryption failed", "INVALID_IV_SIZE")
    decryptor = Cipher(algorithms.AES(bytes(key)), modes.CTR(iv)).decryptor()
    return decryptor.update(ciphertext) + decryptor.finalize()
