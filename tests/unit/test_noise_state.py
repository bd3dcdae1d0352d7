"""
CipherState and SymmetricState tests.

Covers the Noise nonce discipline (strictly increasing, 2^64-1 reserved),
REKEY, and the transcript/chaining-key bookkeeping of SymmetricState.
"""

from __future__ import annotations

import pytest

from mixlink.constants import HASH_SIZE, MAC_SIZE, MAX_NONCE, NOISE_PROTOCOL_NAME
from mixlink.crypto import aead_encrypt, deterministic_bytes, hash_bytes, hkdf
from mixlink.errors import DecryptError, NonceExhausted
from mixlink.noise import CipherState, SymmetricState

KEY = deterministic_bytes("cipher-state-key", 32)


class TestCipherState:
    def test_no_key_is_identity(self) -> None:
        cipher = CipherState()
        assert cipher.encrypt_with_ad(b"ad", b"plain") == b"plain"
        assert cipher.decrypt_with_ad(b"ad", b"plain") == b"plain"
        assert cipher.n == 0

    def test_nonce_advances_per_message(self) -> None:
        sender = CipherState(KEY)
        receiver = CipherState(KEY)
        for i in range(3):
            sealed = sender.encrypt_with_ad(b"", f"msg{i}".encode())
            assert receiver.decrypt_with_ad(b"", sealed) == f"msg{i}".encode()
        assert sender.n == receiver.n == 3

    def test_failed_decrypt_does_not_advance(self) -> None:
        sender = CipherState(KEY)
        receiver = CipherState(KEY)
        sealed = sender.encrypt_with_ad(b"", b"payload")

        with pytest.raises(DecryptError):
            receiver.decrypt_with_ad(b"other-ad", sealed)
        assert receiver.n == 0
        assert receiver.decrypt_with_ad(b"", sealed) == b"payload"

    def test_short_ciphertext_rejected(self) -> None:
        with pytest.raises(DecryptError):
            CipherState(KEY).decrypt_with_ad(b"", b"\x00" * (MAC_SIZE - 1))

    def test_reordered_messages_rejected(self) -> None:
        sender = CipherState(KEY)
        receiver = CipherState(KEY)
        sender.encrypt_with_ad(b"", b"first")
        second = sender.encrypt_with_ad(b"", b"second")
        with pytest.raises(DecryptError):
            receiver.decrypt_with_ad(b"", second)

    def test_last_usable_nonce(self) -> None:
        sender = CipherState(KEY, nonce=MAX_NONCE - 1)
        receiver = CipherState(KEY, nonce=MAX_NONCE - 1)
        sealed = sender.encrypt_with_ad(b"", b"last")
        assert receiver.decrypt_with_ad(b"", sealed) == b"last"
        assert sender.n == MAX_NONCE

    def test_reserved_nonce_never_used_for_encrypt(self) -> None:
        cipher = CipherState(KEY, nonce=MAX_NONCE)
        with pytest.raises(NonceExhausted):
            cipher.encrypt_with_ad(b"", b"too many")
        assert cipher.n == MAX_NONCE

    def test_reserved_nonce_never_used_for_decrypt(self) -> None:
        cipher = CipherState(KEY, nonce=MAX_NONCE)
        with pytest.raises(NonceExhausted):
            cipher.decrypt_with_ad(b"", b"\x00" * 32)

    def test_rekey_matches_noise_definition(self) -> None:
        cipher = CipherState(KEY, nonce=5)
        expected = aead_encrypt(KEY, MAX_NONCE, b"", bytes(32))[:32]

        cipher.rekey()

        assert cipher.n == 5
        reference = CipherState(expected, nonce=5)
        assert cipher.encrypt_with_ad(b"", b"x") == reference.encrypt_with_ad(b"", b"x")

    def test_rekeyed_peers_stay_in_step(self) -> None:
        sender = CipherState(KEY)
        receiver = CipherState(KEY)
        for i in range(4):
            sealed = sender.encrypt_with_ad(b"", bytes([i]))
            sender.rekey()
            assert receiver.decrypt_with_ad(b"", sealed) == bytes([i])
            receiver.rekey()

    def test_rekey_only_on_one_side_breaks_stream(self) -> None:
        sender = CipherState(KEY)
        receiver = CipherState(KEY)
        receiver.decrypt_with_ad(b"", sender.encrypt_with_ad(b"", b"one"))
        sender.rekey()
        with pytest.raises(DecryptError):
            receiver.decrypt_with_ad(b"", sender.encrypt_with_ad(b"", b"two"))

    def test_wipe_drops_key(self) -> None:
        cipher = CipherState(KEY)
        key_buffer = cipher._key
        cipher.wipe()
        assert not cipher.has_key()
        assert key_buffer == bytearray(32)

    def test_repr_hides_key(self) -> None:
        assert KEY.hex() not in repr(CipherState(KEY))

    def test_key_size_checked(self) -> None:
        with pytest.raises(ValueError):
            CipherState(b"\x00" * 16)


class TestSymmetricState:
    def test_short_name_is_padded(self) -> None:
        state = SymmetricState(NOISE_PROTOCOL_NAME)
        expected = NOISE_PROTOCOL_NAME.ljust(HASH_SIZE, b"\x00")
        assert state.handshake_hash() == expected
        assert bytes(state.ck) == expected

    def test_long_name_is_hashed(self) -> None:
        name = b"N" * (HASH_SIZE + 1)
        assert SymmetricState(name).handshake_hash() == hash_bytes(name)

    def test_mix_hash(self) -> None:
        state = SymmetricState(NOISE_PROTOCOL_NAME)
        before = state.handshake_hash()
        state.mix_hash(b"data")
        assert state.handshake_hash() == hash_bytes(before + b"data")

    def test_mix_key_sets_cipher(self) -> None:
        state = SymmetricState(NOISE_PROTOCOL_NAME)
        ck = bytes(state.ck)
        state.mix_key(b"\x01" * 32)

        new_ck, temp_k = hkdf(ck, b"\x01" * 32, 2)
        assert bytes(state.ck) == new_ck
        assert state.cipher.has_key()
        assert state.cipher.encrypt_with_ad(b"", b"p") == aead_encrypt(temp_k[:32], 0, b"", b"p")

    def test_encrypt_and_hash_round_trip(self) -> None:
        sender = SymmetricState(NOISE_PROTOCOL_NAME)
        receiver = SymmetricState(NOISE_PROTOCOL_NAME)
        sender.mix_key(b"\x02" * 32)
        receiver.mix_key(b"\x02" * 32)

        sealed = sender.encrypt_and_hash(b"secret")
        assert receiver.decrypt_and_hash(sealed) == b"secret"
        assert sender.handshake_hash() == receiver.handshake_hash()

    def test_split_is_complementary_and_wipes(self) -> None:
        a = SymmetricState(NOISE_PROTOCOL_NAME)
        b = SymmetricState(NOISE_PROTOCOL_NAME)
        a.mix_key(b"\x03" * 32)
        b.mix_key(b"\x03" * 32)

        a1, a2 = a.split()
        b1, b2 = b.split()

        assert b1.decrypt_with_ad(b"", a1.encrypt_with_ad(b"", b"one")) == b"one"
        assert a2.decrypt_with_ad(b"", b2.encrypt_with_ad(b"", b"two")) == b"two"
        assert a.ck == bytearray(HASH_SIZE)
        assert not a.cipher.has_key()
