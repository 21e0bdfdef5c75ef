"""
Tests for the PayUNi trade codec.

Covers the wire envelope, signature checks before decryption, and
property-based round-trip and tamper detection.
"""

import base64
import hashlib

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from storefront.exceptions import DecodeError, IntegrityError
from storefront.services.trade_codec import PayuniTradeCodec

KEY = "12345678901234567890123456789012"
IV = "1234567890123456"

# ============================================================================
# Hypothesis Strategies
# ============================================================================

# Form values: any text without lone surrogates (not encodable as UTF-8)
field_text = st.text(
    alphabet=st.characters(blacklist_categories=("Cs",)),
    max_size=40,
)
field_names = st.text(
    alphabet=st.characters(blacklist_categories=("Cs",)),
    min_size=1,
    max_size=20,
)
field_lists = st.lists(st.tuples(field_names, field_text), min_size=1, max_size=8)


@pytest.fixture
def codec() -> PayuniTradeCodec:
    return PayuniTradeCodec(KEY, IV)


def _flip_hex(value: str, index: int) -> str:
    """Change one hex digit of value."""
    ch = value[index]
    replacement = "0" if ch.lower() != "0" else "1"
    if ch.isupper():
        replacement = replacement.upper()
    return value[:index] + replacement + value[index + 1 :]


class TestConstruction:
    """Tests for key material validation."""

    def test_rejects_short_key(self):
        with pytest.raises(ValueError, match="32 bytes"):
            PayuniTradeCodec("short", IV)

    def test_rejects_wrong_iv_length(self):
        with pytest.raises(ValueError, match="16 bytes"):
            PayuniTradeCodec(KEY, "1234")


class TestWireFormat:
    """Tests for the EncryptInfo/HashInfo envelope."""

    def test_encrypt_info_is_hex_of_ciphertext_and_tag(self, codec):
        encoded = codec.encode([("MerID", "S01"), ("TradeAmt", "990")])
        envelope = bytes.fromhex(encoded.encrypt_info).decode("ascii")
        ciphertext_b64, tag_b64 = envelope.split(":::")
        assert base64.b64decode(ciphertext_b64)
        assert len(base64.b64decode(tag_b64)) == 16

    def test_hash_info_is_uppercase_sha256_of_key_cipher_iv(self, codec):
        encoded = codec.encode([("MerID", "S01")])
        expected = hashlib.sha256(f"{KEY}{encoded.encrypt_info}{IV}".encode()).hexdigest().upper()
        assert encoded.hash_info == expected

    def test_plaintext_is_urlencoded_in_field_order(self, codec):
        encoded = codec.encode([("B", "2"), ("A", "1 x")])
        assert codec.decrypt(encoded.encrypt_info) == "B=2&A=1+x"

    def test_encoding_is_deterministic(self, codec):
        fields = [("MerTradeNo", "T1"), ("TradeAmt", "3500")]
        assert codec.encode(fields) == codec.encode(fields)

    def test_different_keys_produce_different_signatures(self, codec):
        other = PayuniTradeCodec("abcdefghijklmnopqrstuvwxyz012345", IV)
        fields = [("MerTradeNo", "T1")]
        assert codec.encode(fields).hash_info != other.encode(fields).hash_info


class TestDecode:
    """Tests for verification and decoding."""

    def test_round_trip_preserves_order_and_blank_values(self, codec):
        fields = [("MerTradeNo", "T1"), ("Message", ""), ("ProdDesc", "基礎方案 & more")]
        encoded = codec.encode(fields)
        assert codec.decode(encoded.encrypt_info, encoded.hash_info) == fields

    def test_empty_field_list_round_trips(self, codec):
        encoded = codec.encode([])
        assert codec.decode(encoded.encrypt_info, encoded.hash_info) == []

    def test_wrong_signature_raises_integrity_error(self, codec):
        encoded = codec.encode([("MerTradeNo", "T1")])
        with pytest.raises(IntegrityError):
            codec.decode(encoded.encrypt_info, "0" * 64)

    def test_missing_signature_raises_integrity_error(self, codec):
        encoded = codec.encode([("MerTradeNo", "T1")])
        with pytest.raises(IntegrityError):
            codec.decode(encoded.encrypt_info, "")

    def test_payload_signed_with_other_key_is_rejected(self, codec):
        forger = PayuniTradeCodec("abcdefghijklmnopqrstuvwxyz012345", IV)
        forged = forger.encode([("MerTradeNo", "T1"), ("Status", "SUCCESS")])
        with pytest.raises(IntegrityError):
            codec.decode(forged.encrypt_info, forged.hash_info)

    def test_signature_checked_before_decryption(self, codec):
        """Garbage ciphertext with a bad signature is an integrity failure, not a decode failure."""
        with pytest.raises(IntegrityError):
            codec.decode("zz-not-hex", "ABC")

    def test_correctly_signed_garbage_raises_decode_error(self, codec):
        garbage = "not hex at all"
        with pytest.raises(DecodeError):
            codec.decode(garbage, codec.sign(garbage))

    def test_correctly_signed_non_key_value_plaintext_raises_decode_error(self, codec):
        encrypt_info = codec.encrypt("just-a-string-without-equals")
        with pytest.raises(DecodeError):
            codec.decode(encrypt_info, codec.sign(encrypt_info))


# ============================================================================
# Property-based tests
# ============================================================================


class TestCodecProperties:
    """Round-trip and tamper detection over generated field sets."""

    @given(fields=field_lists)
    @settings(max_examples=100)
    def test_decode_inverts_encode(self, fields):
        codec = PayuniTradeCodec(KEY, IV)
        encoded = codec.encode(fields)
        assert codec.decode(encoded.encrypt_info, encoded.hash_info) == fields

    @given(fields=field_lists, data=st.data())
    @settings(max_examples=50)
    def test_any_ciphertext_digit_change_is_detected(self, fields, data):
        codec = PayuniTradeCodec(KEY, IV)
        encoded = codec.encode(fields)
        index = data.draw(st.integers(min_value=0, max_value=len(encoded.encrypt_info) - 1))
        tampered = _flip_hex(encoded.encrypt_info, index)
        with pytest.raises(IntegrityError):
            codec.decode(tampered, encoded.hash_info)

    @given(fields=field_lists, data=st.data())
    @settings(max_examples=50)
    def test_any_signature_digit_change_is_detected(self, fields, data):
        codec = PayuniTradeCodec(KEY, IV)
        encoded = codec.encode(fields)
        index = data.draw(st.integers(min_value=0, max_value=len(encoded.hash_info) - 1))
        tampered = _flip_hex(encoded.hash_info, index)
        with pytest.raises(IntegrityError):
            codec.decode(encoded.encrypt_info, tampered)
