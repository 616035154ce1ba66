"""Cryptographic utilities for parley.

Includes:
- X25519 key pairs for per-user encryption bundles
- PBKDF2-HMAC-SHA256 + AES-256-GCM for protecting private keys with a passphrase
- AES-256-GCM for sealing room keys at rest under the server key-encryption key
- Room-key wrapping for a recipient's public key (tagged by ``WrapAlgorithm``)
- SecretBox (XSalsa20-Poly1305) helpers that clients use for room messages

The server only ever calls the key generation, sealing and wrapping functions.
``unlock_private_key``, ``unwrap_room_key`` and the message helpers exist for
clients and tests.
"""

import base64
import hashlib
import os
from dataclasses import dataclass
from enum import Enum

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from nacl.public import PrivateKey, PublicKey, SealedBox
from nacl.secret import SecretBox

KDF_NAME = "pbkdf2-sha256"
KDF_SALT_BYTES = 16
AESGCM_NONCE_BYTES = 12
ROOM_KEY_BYTES = 32


def generate_key() -> bytes:
    """Generate a random 256-bit key."""
    return os.urandom(32)


def bytes_to_base64url(data: bytes) -> str:
    """Encode bytes to base64url (URL-safe, no padding)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_to_bytes(s: str) -> bytes:
    """Decode base64url string to bytes (handles missing padding).

    Raises:
        ValueError: If ``s`` is not valid base64url
    """
    # Add padding if needed
    padding = 4 - (len(s) % 4)
    if padding != 4:
        s += "=" * padding
    return base64.b64decode(s, altchars=b"-_", validate=True)


# =============================================================================
# User key pairs (X25519)
# =============================================================================


@dataclass
class KeyPair:
    """Container for an X25519 encryption keypair."""

    private_key: bytes  # 32 bytes
    public_key: bytes  # 32 bytes

    @property
    def public_key_base64(self) -> str:
        """Base64url-encoded public key for API."""
        return bytes_to_base64url(self.public_key)

    @classmethod
    def from_private_key(cls, private_key: bytes) -> "KeyPair":
        """Rebuild the keypair from a 32-byte private key."""
        nacl_private = PrivateKey(private_key)
        return cls(private_key=private_key, public_key=bytes(nacl_private.public_key))


def generate_keypair() -> KeyPair:
    """Generate a new X25519 keypair."""
    nacl_private = PrivateKey.generate()
    return KeyPair(private_key=bytes(nacl_private), public_key=bytes(nacl_private.public_key))


# =============================================================================
# Passphrase protection for private keys
# =============================================================================


@dataclass
class ProtectedPrivateKey:
    """A private key encrypted under a passphrase-derived key."""

    ciphertext: bytes
    salt: bytes
    nonce: bytes
    iterations: int
    kdf: str = KDF_NAME


def derive_passphrase_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    """
    Derive a 32-byte key from a passphrase with PBKDF2-HMAC-SHA256.

    Args:
        passphrase: User passphrase
        salt: Random salt (16 bytes)
        iterations: PBKDF2 iteration count

    Returns:
        32-byte key for AES-256-GCM
    """
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
    return kdf.derive(passphrase.encode("utf-8"))


def protect_private_key(
    private_key: bytes,
    passphrase: str,
    user_id: str,
    iterations: int,
) -> ProtectedPrivateKey:
    """
    Encrypt a private key with AES-256-GCM under a passphrase-derived key.

    Args:
        private_key: 32-byte X25519 private key
        passphrase: User passphrase (never stored)
        user_id: Owner of the key, used as additional authenticated data (AAD)
        iterations: PBKDF2 iteration count

    Returns:
        ProtectedPrivateKey holding ciphertext, salt, nonce and KDF parameters
    """
    salt = os.urandom(KDF_SALT_BYTES)
    nonce = os.urandom(AESGCM_NONCE_BYTES)
    key = derive_passphrase_key(passphrase, salt, iterations)
    ciphertext = AESGCM(key).encrypt(nonce, private_key, user_id.encode("utf-8"))
    return ProtectedPrivateKey(ciphertext=ciphertext, salt=salt, nonce=nonce, iterations=iterations)


def unlock_private_key(
    encrypted_private_key: bytes,
    passphrase: str,
    salt: bytes,
    nonce: bytes,
    iterations: int,
    user_id: str,
) -> bytes:
    """
    Decrypt a private key protected by ``protect_private_key``.

    Returns:
        32-byte X25519 private key

    Raises:
        cryptography.exceptions.InvalidTag: If the passphrase is wrong or data was tampered
    """
    key = derive_passphrase_key(passphrase, salt, iterations)
    return AESGCM(key).decrypt(nonce, encrypted_private_key, user_id.encode("utf-8"))


# =============================================================================
# Room keys at rest
# =============================================================================


def generate_room_key() -> bytes:
    """Generate a fresh 32-byte room key for a new epoch."""
    return os.urandom(ROOM_KEY_BYTES)


def _room_context(room_id: str, epoch: int) -> bytes:
    return f"{room_id}:{epoch}".encode("utf-8")


def seal_room_key(room_key: bytes, kek: bytes, room_id: str, epoch: int) -> bytes:
    """
    Seal a room key at rest under the server key-encryption key.

    Returns:
        nonce (12 bytes) + ciphertext + tag (16 bytes)
    """
    nonce = os.urandom(AESGCM_NONCE_BYTES)
    return nonce + AESGCM(kek).encrypt(nonce, room_key, _room_context(room_id, epoch))


def open_room_key(sealed: bytes, kek: bytes, room_id: str, epoch: int) -> bytes:
    """
    Open a room key sealed by ``seal_room_key``.

    Raises:
        cryptography.exceptions.InvalidTag: If the KEK, room or epoch does not match
    """
    nonce, ciphertext = sealed[:AESGCM_NONCE_BYTES], sealed[AESGCM_NONCE_BYTES:]
    return AESGCM(kek).decrypt(nonce, ciphertext, _room_context(room_id, epoch))


# =============================================================================
# Room-key wrapping for recipients
# =============================================================================


class WrapAlgorithm(str, Enum):
    """How a room key is wrapped for one recipient.

    The tag is stored with every grant, so grants made under an older default
    stay readable after the default changes.
    """

    SEALED_BOX = "x25519-sealedbox"
    HKDF_AESGCM = "x25519-hkdf-aesgcm"


def _wrap_context(room_id: str, epoch: int) -> bytes:
    return f"parley-room:{room_id}:{epoch}:".encode("utf-8")


def _wrap_sealed_box(room_key: bytes, recipient_public_key: bytes, room_id: str, epoch: int) -> bytes:
    # Context prefix binds the wrapped key to its room and epoch
    payload = _wrap_context(room_id, epoch) + room_key
    return bytes(SealedBox(PublicKey(recipient_public_key)).encrypt(payload))


def _unwrap_sealed_box(wrapped: bytes, private_key: bytes, room_id: str, epoch: int) -> bytes:
    payload = bytes(SealedBox(PrivateKey(private_key)).decrypt(wrapped))
    expected_context = _wrap_context(room_id, epoch)
    if not payload.startswith(expected_context):
        raise ValueError("Room key was wrapped for a different room or epoch")
    return payload[len(expected_context) :]


def _hkdf_wrap_key(shared: bytes, ephemeral_public: bytes, recipient_public: bytes, room_id: str, epoch: int) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=ephemeral_public + recipient_public,
        info=_wrap_context(room_id, epoch),
    )
    return hkdf.derive(shared)


def _wrap_hkdf_aesgcm(room_key: bytes, recipient_public_key: bytes, room_id: str, epoch: int) -> bytes:
    ephemeral = X25519PrivateKey.generate()
    ephemeral_public = ephemeral.public_key().public_bytes_raw()
    shared = ephemeral.exchange(X25519PublicKey.from_public_bytes(recipient_public_key))
    key = _hkdf_wrap_key(shared, ephemeral_public, recipient_public_key, room_id, epoch)
    nonce = os.urandom(AESGCM_NONCE_BYTES)
    ciphertext = AESGCM(key).encrypt(nonce, room_key, _room_context(room_id, epoch))
    # Format: <ephemeral public key:32><nonce:12><ciphertext+tag>
    return ephemeral_public + nonce + ciphertext


def _unwrap_hkdf_aesgcm(wrapped: bytes, private_key: bytes, room_id: str, epoch: int) -> bytes:
    ephemeral_public = wrapped[:32]
    nonce = wrapped[32 : 32 + AESGCM_NONCE_BYTES]
    ciphertext = wrapped[32 + AESGCM_NONCE_BYTES :]
    recipient = X25519PrivateKey.from_private_bytes(private_key)
    recipient_public = recipient.public_key().public_bytes_raw()
    shared = recipient.exchange(X25519PublicKey.from_public_bytes(ephemeral_public))
    key = _hkdf_wrap_key(shared, ephemeral_public, recipient_public, room_id, epoch)
    return AESGCM(key).decrypt(nonce, ciphertext, _room_context(room_id, epoch))


_WRAPPERS = {
    WrapAlgorithm.SEALED_BOX: (_wrap_sealed_box, _unwrap_sealed_box),
    WrapAlgorithm.HKDF_AESGCM: (_wrap_hkdf_aesgcm, _unwrap_hkdf_aesgcm),
}


def wrap_room_key(
    room_key: bytes,
    recipient_public_key: bytes,
    room_id: str,
    epoch: int,
    algorithm: WrapAlgorithm | str = WrapAlgorithm.SEALED_BOX,
) -> bytes:
    """
    Wrap a room key so only the holder of the recipient's private key can read it.

    Args:
        room_key: 32-byte room key for ``epoch``
        recipient_public_key: 32-byte X25519 public key of the recipient
        room_id: Room identifier (bound into the wrapped key)
        epoch: Key epoch (bound into the wrapped key)
        algorithm: Wrap variant; stored alongside the result by the caller

    Returns:
        Wrapped key bytes
    """
    wrap, _ = _WRAPPERS[WrapAlgorithm(algorithm)]
    return wrap(room_key, recipient_public_key, room_id, epoch)


def unwrap_room_key(
    wrapped: bytes,
    private_key: bytes,
    room_id: str,
    epoch: int,
    algorithm: WrapAlgorithm | str,
) -> bytes:
    """
    Unwrap a room key received in a grant.

    Raises:
        nacl.exceptions.CryptoError: If a sealed box cannot be opened
        cryptography.exceptions.InvalidTag: If an AES-GCM wrap cannot be opened
        ValueError: If the key was wrapped for another room or epoch
    """
    _, unwrap = _WRAPPERS[WrapAlgorithm(algorithm)]
    return unwrap(wrapped, private_key, room_id, epoch)


# =============================================================================
# Room messages (client side)
# =============================================================================


def compute_membership_hash(member_ids: list[str]) -> str:
    """
    Compute a deterministic hash of room membership.

    The hash is order-independent (members are sorted) to ensure
    consistent results regardless of how members are enumerated.

    Args:
        member_ids: List of user IDs in the room

    Returns:
        64-character hex string (SHA-256 hash)
    """
    # Sort for determinism, join with separator that can't appear in IDs
    membership_string = "\x00".join(sorted(member_ids))
    return hashlib.sha256(membership_string.encode("utf-8")).hexdigest()


@dataclass
class EncryptedRoomMessage:
    """Container for an encrypted room message."""

    ciphertext: bytes
    nonce: bytes  # 24-byte nonce

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "ciphertext": bytes_to_base64url(self.ciphertext),
            "nonce": bytes_to_base64url(self.nonce),
        }


def encrypt_room_message(plaintext: str, room_key: bytes) -> EncryptedRoomMessage:
    """Encrypt a message body with the room key of the current epoch."""
    nonce = os.urandom(SecretBox.NONCE_SIZE)
    ciphertext = SecretBox(room_key).encrypt(plaintext.encode("utf-8"), nonce).ciphertext
    return EncryptedRoomMessage(ciphertext=ciphertext, nonce=nonce)


def decrypt_room_message(ciphertext: bytes, nonce: bytes, room_key: bytes) -> str:
    """
    Decrypt a message body.

    Raises:
        nacl.exceptions.CryptoError: If decryption fails (wrong key or tampered)
    """
    return SecretBox(room_key).decrypt(ciphertext, nonce).decode("utf-8")
