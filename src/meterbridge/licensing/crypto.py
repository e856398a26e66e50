"""AES-256-CBC envelope for license service payloads.

Wire format is ``hex(iv) + ":" + hex(ciphertext)``. The key is the SHA-256
digest of the shared private key, and every message gets a fresh 16-byte IV.
"""

import hashlib
import json
import os
from typing import Any, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

IV_LENGTH = 16
_BLOCK_BITS = algorithms.AES.block_size


class LicenseCryptoError(Exception):
    """Raised when a payload cannot be encrypted or decrypted."""


def derive_key(private_key: str) -> bytes:
    return hashlib.sha256(private_key.encode("utf-8")).digest()


def encrypt_payload(data: dict[str, Any], private_key: str, iv: Optional[bytes] = None) -> str:
    if iv is None:
        iv = os.urandom(IV_LENGTH)
    if len(iv) != IV_LENGTH:
        raise LicenseCryptoError(f"IV must be {IV_LENGTH} bytes")

    plaintext = json.dumps(data, separators=(",", ":")).encode("utf-8")
    padder = padding.PKCS7(_BLOCK_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = Cipher(algorithms.AES(derive_key(private_key)), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return f"{iv.hex()}:{ciphertext.hex()}"


def decrypt_payload(text: str, private_key: str) -> dict[str, Any]:
    iv_hex, sep, ct_hex = text.strip().partition(":")
    if not sep:
        raise LicenseCryptoError("Payload is not in iv:ciphertext form")
    try:
        iv = bytes.fromhex(iv_hex)
        ciphertext = bytes.fromhex(ct_hex)
    except ValueError as exc:
        raise LicenseCryptoError("Payload is not valid hex") from exc
    if len(iv) != IV_LENGTH:
        raise LicenseCryptoError(f"IV must be {IV_LENGTH} bytes")
    if not ciphertext or len(ciphertext) % (_BLOCK_BITS // 8):
        raise LicenseCryptoError("Ciphertext length is not a multiple of the block size")

    decryptor = Cipher(algorithms.AES(derive_key(private_key)), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
    try:
        plaintext = unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise LicenseCryptoError("Invalid padding") from exc

    try:
        data = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise LicenseCryptoError("Decrypted payload is not valid JSON") from exc
    if not isinstance(data, dict):
        raise LicenseCryptoError("Decrypted payload is not a JSON object")
    return data
