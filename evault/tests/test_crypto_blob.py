from __future__ import annotations

import base64
import logging
import os

import pytest

from evault.crypto.blob import (
    DEFAULT_MIME,
    EncryptedBlob,
    decrypt_blob,
    encrypt_blob,
    open_sealed,
    seal,
)
from evault.crypto.secrets import SecretBuffer, wipe_bytes
from evault.errors import DecryptionFailed


def _flip_bit(b64: str, byte_index: int, bit: int = 0) -> str:
    raw = bytearray(base64.b64decode(b64))
    raw[byte_index] ^= 1 << bit
    return base64.b64encode(bytes(raw)).decode("ascii")


@pytest.mark.parametrize(
    "payload",
    [b"", b"x", b"known-8b", os.urandom(4096)],
)
def test_encrypt_decrypt_roundtrip(payload: bytes) -> None:
    key = os.urandom(32)
    sealed = encrypt_blob(key, payload, mime="image/png")
    assert sealed.size == len(payload)
    assert sealed.mime == "image/png"
    assert len(base64.b64decode(sealed.nonce)) == 12

    plain = decrypt_blob(key, sealed)
    assert plain.data == payload
    assert plain.mime == "image/png"


def test_mime_defaults_to_octet_stream() -> None:
    key = os.urandom(32)
    sealed = encrypt_blob(key, b"abc")
    assert sealed.mime == DEFAULT_MIME
    assert decrypt_blob(key, sealed).mime == DEFAULT_MIME


def test_nonces_are_fresh_per_encryption() -> None:
    key = os.urandom(32)
    a = encrypt_blob(key, b"same bytes")
    b = encrypt_blob(key, b"same bytes")
    assert a.nonce != b.nonce
    assert a.cipher != b.cipher


def test_every_cipher_bit_flip_is_detected() -> None:
    key = os.urandom(32)
    sealed = encrypt_blob(key, b"evidence")
    cipher_len = len(base64.b64decode(sealed.cipher))
    for i in range(cipher_len):
        tampered = EncryptedBlob(
            nonce=sealed.nonce,
            cipher=_flip_bit(sealed.cipher, i, bit=i % 8),
            mime=sealed.mime,
            size=sealed.size,
        )
        with pytest.raises(DecryptionFailed):
            decrypt_blob(key, tampered)


def test_every_nonce_bit_flip_is_detected() -> None:
    key = os.urandom(32)
    sealed = encrypt_blob(key, b"evidence")
    for i in range(12):
        tampered = EncryptedBlob(
            nonce=_flip_bit(sealed.nonce, i, bit=7 - i % 8),
            cipher=sealed.cipher,
            mime=sealed.mime,
            size=sealed.size,
        )
        with pytest.raises(DecryptionFailed):
            decrypt_blob(key, tampered)


def _flip_char_bit(text: str, index: int, bit: int) -> str:
    return text[:index] + chr(ord(text[index]) ^ (1 << bit)) + text[index + 1 :]


def test_every_bit_flip_of_the_encoded_text_is_detected() -> None:
    # 17-byte ciphertexts leave unused low bits in the last base64 character.
    for _ in range(10):
        key = os.urandom(32)
        sealed = encrypt_blob(key, b"x")
        for field in ("nonce", "cipher"):
            text = getattr(sealed, field)
            for i in range(len(text)):
                for bit in range(8):
                    fields = sealed.to_payload()
                    fields[field] = _flip_char_bit(text, i, bit)
                    with pytest.raises(DecryptionFailed):
                        decrypt_blob(key, EncryptedBlob(**fields))


def test_non_canonical_base64_is_rejected() -> None:
    key = os.urandom(32)
    nonce, cipher = seal(key, b"x")
    last = cipher.rstrip("=")[-1]
    padding = cipher[len(cipher.rstrip("=")) :]
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
    sibling = alphabet[alphabet.index(last) ^ 1]
    tampered = cipher.rstrip("=")[:-1] + sibling + padding
    assert base64.b64decode(tampered) == base64.b64decode(cipher)
    with pytest.raises(DecryptionFailed):
        open_sealed(key, nonce, tampered)


def test_wrong_key_and_garbage_encoding_fail_the_same_way() -> None:
    sealed = encrypt_blob(os.urandom(32), b"evidence")
    with pytest.raises(DecryptionFailed) as wrong_key:
        decrypt_blob(os.urandom(32), sealed)
    with pytest.raises(DecryptionFailed) as bad_b64:
        open_sealed(os.urandom(32), "!!not base64!!", sealed.cipher)
    assert str(wrong_key.value) == str(bad_b64.value) == "decryption failed"


def test_short_nonce_is_rejected() -> None:
    key = os.urandom(32)
    nonce, cipher = seal(key, b"abc")
    short = base64.b64encode(base64.b64decode(nonce)[:8]).decode("ascii")
    with pytest.raises(DecryptionFailed):
        open_sealed(key, short, cipher)


def test_key_must_be_32_bytes() -> None:
    with pytest.raises(ValueError):
        encrypt_blob(b"short", b"abc")


def test_large_video_logs_warning(caplog) -> None:
    key = os.urandom(32)
    with caplog.at_level(logging.WARNING, logger="evault.crypto"):
        encrypt_blob(key, b"0" * 64, mime="video/mp4", large_video_bytes=32)
    assert any(r.getMessage() == "large_video_blob" for r in caplog.records)

    caplog.clear()
    with caplog.at_level(logging.WARNING, logger="evault.crypto"):
        encrypt_blob(key, b"0" * 64, mime="image/jpeg", large_video_bytes=32)
    assert not caplog.records


def test_secret_buffer_wipes_on_exit_and_hides_content() -> None:
    with SecretBuffer(b"\x01" * 32) as buf:
        assert len(buf) == 32
        assert "01" not in repr(buf)
        view_copy = bytes(buf.view())
    assert view_copy == b"\x01" * 32
    assert buf.wiped
    assert "wiped" in repr(buf)
    with pytest.raises(ValueError):
        buf.view()


def test_secret_buffer_wipes_on_exception() -> None:
    buf = SecretBuffer(b"\x02" * 8)
    with pytest.raises(RuntimeError):
        with buf:
            raise RuntimeError("boom")
    assert buf.wiped


def test_secret_buffer_take_zeroes_source_and_copy_is_independent() -> None:
    source = bytearray(b"\x03" * 16)
    buf = SecretBuffer.take(source)
    assert source == bytearray(16)

    clone = buf.copy()
    buf.wipe()
    assert bytes(clone.view()) == b"\x03" * 16
    clone.wipe()


def test_wipe_bytes_zeroes_in_place() -> None:
    data = bytearray(b"secret")
    wipe_bytes(data)
    assert data == bytearray(6)
    wipe_bytes(None)
