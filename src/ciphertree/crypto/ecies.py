"""
ECIES key wrapping on secp256k1.

WrappedKey layout:
    ephemeral public key : 65 bytes (uncompressed, 0x04 prefix)
    ciphertext || tag    : AES-256-GCM, 16-byte tag

The AES key and the 12-byte nonce both come from
HKDF-SHA256(ephemeral_pub || shared_x). Every wrap uses a new ephemeral key,
so a (key, nonce) pair is never reused and two wraps of the same key differ.

Failures carry one message per operation whatever the cause, so a caller
cannot use unwrap as an oracle to tell a wrong key from a tampered blob.
"""
from dataclasses import dataclass

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from ciphertree.crypto.aead import AES_IV_SIZE, AES_KEY_SIZE, AES_TAG_SIZE
from ciphertree.crypto.hash import derive_context_key, derive_key
from ciphertree.crypto.keys import zeroize
from ciphertree.errors import CryptoError

SECP256K1_PUBLIC_KEY_SIZE = 65
SECP256K1_PRIVATE_KEY_SIZE = 32
# Group order n of secp256k1
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

ECIES_INFO = b"ciphertree-ecies-v1"
USER_KEYPAIR_CONTEXT = "user-ecies-keypair-v1"

WRAP_MESSAGE = "Key wrapping failed"
UNWRAP_MESSAGE = "Key unwrapping failed"
REWRAP_MESSAGE = "Key re-wrapping failed"


@dataclass
class UserKeypair:
    public_key: bytes        # 65 bytes, uncompressed
    private_key: bytearray   # 32 bytes

    def close(self) -> None:
        zeroize(self.private_key)


def _encode_public(key: ec.EllipticCurvePublicKey) -> bytes:
    return key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)


def _load_public_key(data: bytes) -> ec.EllipticCurvePublicKey:
    # Only the canonical uncompressed encoding is accepted
    if len(data) != SECP256K1_PUBLIC_KEY_SIZE or data[0] != 0x04:
        raise CryptoError(WRAP_MESSAGE, "INVALID_PUBLIC_KEY")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), bytes(data))
    except ValueError:
        raise CryptoError(WRAP_MESSAGE, "INVALID_PUBLIC_KEY") from None


def _load_private_key(data: bytes) -> ec.EllipticCurvePrivateKey:
    return ec.derive_private_key(int.from_bytes(bytes(data), "big"), ec.SECP256K1())


def _wrap_secret(ephemeral_pub: bytes, shared: bytes) -> bytearray:
    return derive_key(ephemeral_pub + shared, b"", ECIES_INFO, AES_KEY_SIZE + AES_IV_SIZE)


def wrap_key(key: bytes, recipient_public_key: bytes) -> bytes:
    recipient = _load_public_key(recipient_public_key)
    secret = None
    try:
        ephemeral = ec.generate_private_key(ec.SECP256K1())
        ephemeral_pub = _encode_public(ephemeral.public_key())
        shared = ephemeral.exchange(ec.ECDH(), recipient)
        secret = _wrap_secret(ephemeral_pub, shared)
        ct = AESGCM(bytes(secret[:AES_KEY_SIZE])).encrypt(bytes(secret[AES_KEY_SIZE:]), bytes(key), None)
        return ephemeral_pub + ct
    except Exception:
        raise CryptoError(WRAP_MESSAGE, "WRAP_FAILED") from None
    finally:
        zeroize(secret)


def unwrap_key(wrapped: bytes, private_key: bytes) -> bytearray:
    if len(private_key) != SECP256K1_PRIVATE_KEY_SIZE:
        raise CryptoError(UNWRAP_MESSAGE, "INVALID_PRIVATE_KEY")
    secret = None
    try:
        if len(wrapped) < SECP256K1_PUBLIC_KEY_SIZE + AES_TAG_SIZE:
            raise ValueError("wrapped key too short")
        ephemeral_pub = bytes(wrapped[:SECP256K1_PUBLIC_KEY_SIZE])
        ephemeral = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), ephemeral_pub)
        shared = _load_private_key(private_key).exchange(ec.ECDH(), ephemeral)
        secret = _wrap_secret(ephemeral_pub, shared)
        plain = AESGCM(bytes(secret[:AES_KEY_SIZE])).decrypt(
            bytes(secret[AES_KEY_SIZE:]), bytes(wrapped[SECP256K1_PUBLIC_KEY_SIZE:]), None
        )
        return bytearray(plain)
    except Exception:
        raise CryptoError(UNWRAP_MESSAGE, "UNWRAP_FAILED") from None
    finally:
        zeroize(secret)


def rewrap_key(owner_wrapped: bytes, owner_private_key: bytes, recipient_public_key: bytes) -> bytes:
    """Move a wrapped key from the owner to a recipient.

    The intermediate plaintext is wiped in ``finally`` so success, failure and
    interruption all leave it zeroed.
    """
    plain = None
    try:
        plain = unwrap_key(owner_wrapped, owner_private_key)
        return wrap_key(plain, recipient_public_key)
    except Exception:
        raise CryptoError(REWRAP_MESSAGE, "REWRAP_FAILED") from None
    finally:
        zeroize(plain)


def public_key_from_private(private_key: bytes) -> bytes:
    try:
        return _encode_public(_load_private_key(private_key).public_key())
    except ValueError:
        raise CryptoError("Key derivation failed", "INVALID_PRIVATE_KEY") from None


def generate_user_keypair() -> UserKeypair:
    priv = ec.generate_private_key(ec.SECP256K1())
    scalar = priv.private_numbers().private_value
    return UserKeypair(
        public_key=_encode_public(priv.public_key()),
        private_key=bytearray(scalar.to_bytes(SECP256K1_PRIVATE_KEY_SIZE, "big")),
    )


def derive_user_keypair(master_secret: bytes) -> UserKeypair:
    """Deterministic user keypair, so a vault recovers from the passphrase alone."""
    seed = derive_context_key(master_secret, USER_KEYPAIR_CONTEXT)
    try:
        scalar = int.from_bytes(bytes(seed), "big") % (SECP256K1_ORDER - 1) + 1
        private_key = bytearray(scalar.to_bytes(SECP256K1_PRIVATE_KEY_SIZE, "big"))
    finally:
        zeroize(seed)
    return UserKeypair(public_key=public_key_from_private(private_key), private_key=private_key)
