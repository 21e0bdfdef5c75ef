"""
Trade Signature Codec.

Symmetric confidentiality and integrity for all gateway traffic, using the
merchant HashKey/HashIV pair configured at deployment.

Wire scheme (PayUNi):
- plaintext: form-urlencoded field list, in schema order
- EncryptInfo: hex( base64(AES-256-GCM ciphertext) + ":::" + base64(tag) ),
  key = HashKey, nonce = HashIV
- HashInfo: upper( hex( SHA-256(HashKey + EncryptInfo + HashIV) ) )

The nonce is the fixed HashIV, as the gateway mandates, so encoding is
deterministic for a given field list and key pair.
"""

import base64
import hashlib
import hmac
from typing import Protocol
from urllib.parse import parse_qsl, urlencode

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from structlog import get_logger

from storefront.exceptions import DecodeError, IntegrityError
from storefront.models.domain import EncodedTrade

logger = get_logger(__name__)

Fields = list[tuple[str, str]]

_TAG_SEPARATOR = ":::"
_GCM_TAG_BYTES = 16


class SignatureCodec(Protocol):
    """
    Codec protocol.

    The byte-level scheme is gateway specific; anything that signs and
    encrypts field lists this way can stand in for PayuniTradeCodec.
    """

    def encode(self, fields: Fields) -> EncodedTrade:
        """Serialize, encrypt and sign an ordered field list."""
        ...

    def decode(self, encrypt_info: str, hash_info: str) -> Fields:
        """
        Verify the signature, then decrypt and parse.

        Raises:
            IntegrityError: If the signature does not match
            DecodeError: If the signed payload is not well-formed
        """
        ...


class PayuniTradeCodec:
    """AES-256-GCM + SHA-256 codec for PayUNi EncryptInfo/HashInfo."""

    def __init__(self, hash_key: str, hash_iv: str) -> None:
        key = hash_key.encode("utf-8")
        iv = hash_iv.encode("utf-8")
        if len(key) != 32:
            raise ValueError("hash_key must be 32 bytes for AES-256")
        if len(iv) != 16:
            raise ValueError("hash_iv must be 16 bytes")
        self._hash_key = hash_key
        self._hash_iv = hash_iv
        self._aead = AESGCM(key)
        self._nonce = iv

    def sign(self, encrypt_info: str) -> str:
        """Compute HashInfo for a ciphertext."""
        digest = hashlib.sha256(
            f"{self._hash_key}{encrypt_info}{self._hash_iv}".encode("utf-8")
        ).hexdigest()
        return digest.upper()

    def encrypt(self, plaintext: str) -> str:
        """Encrypt plaintext into the hex EncryptInfo envelope."""
        sealed = self._aead.encrypt(self._nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_GCM_TAG_BYTES], sealed[-_GCM_TAG_BYTES:]
        envelope = (
            base64.b64encode(ciphertext).decode("ascii")
            + _TAG_SEPARATOR
            + base64.b64encode(tag).decode("ascii")
        )
        return envelope.encode("ascii").hex()

    def decrypt(self, encrypt_info: str) -> str:
        """
        Decrypt a hex EncryptInfo envelope.

        Raises:
            DecodeError: If the envelope is malformed or authentication fails
        """
        try:
            envelope = bytes.fromhex(encrypt_info).decode("ascii")
            ciphertext_b64, tag_b64 = envelope.split(_TAG_SEPARATOR)
            ciphertext = base64.b64decode(ciphertext_b64, validate=True)
            tag = base64.b64decode(tag_b64, validate=True)
            plaintext = self._aead.decrypt(self._nonce, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except (ValueError, InvalidTag) as exc:
            raise DecodeError(f"cannot decrypt payload: {type(exc).__name__}") from exc

    def encode(self, fields: Fields) -> EncodedTrade:
        """Serialize fields in order, encrypt, and sign the ciphertext."""
        plaintext = urlencode(fields)
        encrypt_info = self.encrypt(plaintext)
        return EncodedTrade(encrypt_info=encrypt_info, hash_info=self.sign(encrypt_info))

    def verify(self, encrypt_info: str, hash_info: str) -> bool:
        """Constant-time signature check."""
        expected = self.sign(encrypt_info)
        return hmac.compare_digest(expected.encode("utf-8"), hash_info.encode("utf-8"))

    def decode(self, encrypt_info: str, hash_info: str) -> Fields:
        """
        Verify, then decrypt and parse.

        The signature is checked before any decryption is attempted.

        Raises:
            IntegrityError: If the signature does not match
            DecodeError: If the signed payload is not well-formed key/value data
        """
        if not encrypt_info or not hash_info or not self.verify(encrypt_info, hash_info):
            raise IntegrityError()

        plaintext = self.decrypt(encrypt_info)
        if plaintext == "":
            return []
        try:
            return parse_qsl(plaintext, keep_blank_values=True, strict_parsing=True)
        except ValueError as exc:
            logger.warning("trade_payload_malformed", length=len(plaintext))
            raise DecodeError("payload is not key/value data") from exc
