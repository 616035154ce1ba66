"""Tests for the crypto module."""

import pytest
from cryptography.exceptions import InvalidTag
from nacl.exceptions import CryptoError

from parley.crypto import (
    KeyPair,
    WrapAlgorithm,
    base64url_to_bytes,
    bytes_to_base64url,
    compute_membership_hash,
    decrypt_room_message,
    encrypt_room_message,
    generate_key,
    generate_keypair,
    generate_room_key,
    open_room_key,
    protect_private_key,
    seal_room_key,
    unlock_private_key,
    unwrap_room_key,
    wrap_room_key,
)

ITERATIONS = 1_000


class TestEncoding:
    """Tests for base64url helpers."""

    def test_no_padding(self):
        """Encoded values carry no '=' padding."""
        encoded = bytes_to_base64url(b"\xff\xfe")
        assert "=" not in encoded
        assert base64url_to_bytes(encoded) == b"\xff\xfe"

    def test_invalid_input_raises_value_error(self):
        with pytest.raises(ValueError):
            base64url_to_bytes("not base64!")


class TestKeyPairs:
    """Tests for X25519 keypairs."""

    def test_generate_keypair(self):
        keypair = generate_keypair()
        assert len(keypair.private_key) == 32
        assert len(keypair.public_key) == 32

    def test_from_private_key_rebuilds_public_key(self):
        keypair = generate_keypair()
        rebuilt = KeyPair.from_private_key(keypair.private_key)
        assert rebuilt.public_key == keypair.public_key


class TestPrivateKeyProtection:
    """Tests for passphrase protection of private keys."""

    def test_unlock_with_correct_passphrase(self):
        keypair = generate_keypair()
        protected = protect_private_key(keypair.private_key, "hunter2", "alice", ITERATIONS)

        unlocked = unlock_private_key(
            protected.ciphertext, "hunter2", protected.salt, protected.nonce, ITERATIONS, "alice"
        )

        assert unlocked == keypair.private_key
        assert protected.kdf == "pbkdf2-sha256"
        assert len(protected.salt) == 16

    def test_wrong_passphrase_fails(self):
        keypair = generate_keypair()
        protected = protect_private_key(keypair.private_key, "hunter2", "alice", ITERATIONS)

        with pytest.raises(InvalidTag):
            unlock_private_key(
                protected.ciphertext, "wrong", protected.salt, protected.nonce, ITERATIONS, "alice"
            )

    def test_bound_to_user_id(self):
        """A protected key copied to another user's bundle does not open."""
        keypair = generate_keypair()
        protected = protect_private_key(keypair.private_key, "hunter2", "alice", ITERATIONS)

        with pytest.raises(InvalidTag):
            unlock_private_key(
                protected.ciphertext, "hunter2", protected.salt, protected.nonce, ITERATIONS, "bob"
            )


class TestRoomKeysAtRest:
    """Tests for sealing room keys under the server key."""

    def test_seal_and_open(self):
        kek = generate_key()
        room_key = generate_room_key()
        sealed = seal_room_key(room_key, kek, "room-1", 0)
        assert room_key not in sealed
        assert open_room_key(sealed, kek, "room-1", 0) == room_key

    def test_bound_to_epoch(self):
        kek = generate_key()
        sealed = seal_room_key(generate_room_key(), kek, "room-1", 0)
        with pytest.raises(InvalidTag):
            open_room_key(sealed, kek, "room-1", 1)

    def test_wrong_kek_fails(self):
        sealed = seal_room_key(generate_room_key(), generate_key(), "room-1", 0)
        with pytest.raises(InvalidTag):
            open_room_key(sealed, generate_key(), "room-1", 0)


class TestKeyWrapping:
    """Tests for wrapping room keys to recipients."""

    @pytest.mark.parametrize("algorithm", list(WrapAlgorithm))
    def test_recipient_unwraps(self, algorithm):
        recipient = generate_keypair()
        room_key = generate_room_key()

        wrapped = wrap_room_key(room_key, recipient.public_key, "room-1", 3, algorithm)

        assert unwrap_room_key(wrapped, recipient.private_key, "room-1", 3, algorithm) == room_key

    @pytest.mark.parametrize("algorithm", list(WrapAlgorithm))
    def test_other_user_cannot_unwrap(self, algorithm):
        recipient = generate_keypair()
        intruder = generate_keypair()
        wrapped = wrap_room_key(generate_room_key(), recipient.public_key, "room-1", 0, algorithm)

        with pytest.raises((CryptoError, InvalidTag)):
            unwrap_room_key(wrapped, intruder.private_key, "room-1", 0, algorithm)

    def test_sealed_box_rejects_other_room(self):
        recipient = generate_keypair()
        wrapped = wrap_room_key(
            generate_room_key(), recipient.public_key, "room-1", 0, WrapAlgorithm.SEALED_BOX
        )
        with pytest.raises(ValueError, match="different room"):
            unwrap_room_key(wrapped, recipient.private_key, "room-2", 0, WrapAlgorithm.SEALED_BOX)

    def test_hkdf_rejects_other_epoch(self):
        recipient = generate_keypair()
        wrapped = wrap_room_key(
            generate_room_key(), recipient.public_key, "room-1", 0, WrapAlgorithm.HKDF_AESGCM
        )
        with pytest.raises(InvalidTag):
            unwrap_room_key(wrapped, recipient.private_key, "room-1", 1, WrapAlgorithm.HKDF_AESGCM)

    def test_algorithm_accepts_tag_string(self):
        recipient = generate_keypair()
        room_key = generate_room_key()
        wrapped = wrap_room_key(room_key, recipient.public_key, "r", 0, "x25519-hkdf-aesgcm")
        assert unwrap_room_key(wrapped, recipient.private_key, "r", 0, "x25519-hkdf-aesgcm") == room_key

    def test_unknown_algorithm(self):
        with pytest.raises(ValueError):
            wrap_room_key(generate_room_key(), generate_keypair().public_key, "r", 0, "rot13")


class TestMembershipHash:
    def test_order_independent(self):
        assert compute_membership_hash(["b", "a", "c"]) == compute_membership_hash(["c", "b", "a"])

    def test_differs_by_membership(self):
        assert compute_membership_hash(["a", "b"]) != compute_membership_hash(["a", "c"])


class TestRoomMessages:
    """Tests for client-side message encryption."""

    def test_encrypt_decrypt(self):
        room_key = generate_room_key()
        encrypted = encrypt_room_message("ship it", room_key)

        assert encrypted.ciphertext != b"ship it"
        assert len(encrypted.nonce) == 24
        assert decrypt_room_message(encrypted.ciphertext, encrypted.nonce, room_key) == "ship it"

    def test_wrong_key_fails(self):
        encrypted = encrypt_room_message("ship it", generate_room_key())
        with pytest.raises(CryptoError):
            decrypt_room_message(encrypted.ciphertext, encrypted.nonce, generate_room_key())

    def test_to_dict_is_base64url(self):
        encrypted = encrypt_room_message("hi", generate_room_key())
        data = encrypted.to_dict()
        assert base64url_to_bytes(data["ciphertext"]) == encrypted.ciphertext
        assert base64url_to_bytes(data["nonce"]) == encrypted.nonce
