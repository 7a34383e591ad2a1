import base64

import pytest

from cardshop.core import crypto
from cardshop.core.exceptions import CorruptCiphertext


@pytest.mark.parametrize("code", [
    "A1",
    "XXXX-YYYY-ZZZZ-0001",
    "兑换码-测试-😀",
    "  spaces inside  ",
])
def test_encrypt_decrypt_round_trip(code):
    payload = crypto.encrypt_text(code)
    assert crypto.decrypt_text(payload) == code


def test_payload_layout():
    payload = crypto.encrypt_text("ABCD-1234")
    parts = payload.split(".")
    assert len(parts) == 3

    nonce, tag, ciphertext = (base64.b64decode(p) for p in parts)
    assert len(nonce) == 12
    assert len(tag) == 16
    assert len(ciphertext) == len("ABCD-1234".encode("utf-8"))


def test_nonce_is_random_per_value():
    assert crypto.encrypt_text("same") != crypto.encrypt_text("same")


def test_decrypt_with_external_aes_gcm_layout():
    """A payload assembled by hand (nonce.tag.ciphertext) decrypts."""
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM

    key = crypto.key_from_secret("another-secret-value")
    nonce = b"\x01" * 12
    sealed = AESGCM(key).encrypt(nonce, b"HELLO", None)
    payload = ".".join(
        base64.b64encode(p).decode() for p in (nonce, sealed[-16:], sealed[:-16])
    )
    assert crypto.decrypt_text(payload, secret="another-secret-value") == "HELLO"


def test_wrong_secret_fails_closed():
    payload = crypto.encrypt_text("secret-code", secret="first-secret")
    with pytest.raises(CorruptCiphertext):
        crypto.decrypt_text(payload, secret="second-secret")


def test_tampered_ciphertext_fails_closed():
    nonce, tag, ciphertext = crypto.encrypt_text("secret-code").split(".")
    raw = bytearray(base64.b64decode(ciphertext))
    raw[0] ^= 0xFF
    tampered = ".".join([nonce, tag, base64.b64encode(bytes(raw)).decode()])
    with pytest.raises(CorruptCiphertext):
        crypto.decrypt_text(tampered)


@pytest.mark.parametrize("payload", [
    "",
    "onlyone",
    "a.b",
    "a.b.c.d",
    "!!!.???.***",
    base64.b64encode(b"short").decode() + ".AAAA.AAAA",
])
def test_malformed_payload_fails_closed(payload):
    with pytest.raises(CorruptCiphertext):
        crypto.decrypt_text(payload)


def test_fingerprint_is_deterministic_and_keyed():
    assert crypto.fingerprint("A1") == crypto.fingerprint("A1")
    assert crypto.fingerprint("A1") != crypto.fingerprint("A2")
    assert crypto.fingerprint("A1", secret="secret-one") != crypto.fingerprint("A1", secret="secret-two")
    assert len(crypto.fingerprint("A1")) == 64


def test_hmac_and_timing_safe_equal():
    sig = crypto.hmac_sha256_hex("whsec", b'{"order_no":"1"}')
    assert crypto.timing_safe_equal(sig, crypto.hmac_sha256_hex("whsec", '{"order_no":"1"}'))
    assert not crypto.timing_safe_equal(sig, "deadbeef")
