# tunnel_crypto.py
"""
Crypto primitives used by the tunnel:
- AES-256-CBC envelope (random IV prepended to the ciphertext)
- RSA PKCS#1 v1.5 private-key transform / public-key inverse, used to prove
  possession of a private key while recovering the original bytes
- MD5 content digest (base64 text) used as a key identifier
"""
from __future__ import annotations

import base64
import hashlib
import os
from typing import Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from tunnel_errors import DecryptError, EncodingError


AES_KEY_BYTES = 32
IV_LENGTH = 16
# PKCS#1 v1.5: 0x00 0x01 PS(>= 8 bytes of 0xFF) 0x00 DATA
PKCS1_OVERHEAD = 11


def generate_aes_key() -> bytes:
    return os.urandom(AES_KEY_BYTES)


def encode_aes_key(key: bytes) -> str:
    return base64.b64encode(key).decode("ascii")


def decode_aes_key(encoded: str) -> bytes:
    key = base64.b64decode(encoded)
    if len(key) != AES_KEY_BYTES:
        raise ValueError(f"bad aes key length: {len(key)}")
    return key


def symmetric_seal(plaintext: bytes, key: bytes) -> bytes:
    iv = os.urandom(IV_LENGTH)
    padder = sym_padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return iv + encryptor.update(padded) + encryptor.finalize()


def symmetric_open(blob: bytes, key: bytes) -> bytes:
    if len(blob) < IV_LENGTH:
        raise DecryptError("ciphertext too short")
    iv, ciphertext = blob[:IV_LENGTH], blob[IV_LENGTH:]
    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = sym_padding.PKCS7(algorithms.AES.block_size).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptError(str(e)) from e


def _block_size(key: Union[rsa.RSAPrivateKey, rsa.RSAPublicKey]) -> int:
    return (key.key_size + 7) // 8


def asymmetric_transform(data: bytes, private_key: rsa.RSAPrivateKey) -> bytes:
    """
    Raw RSA private-key operation over a PKCS#1 type 1 block. This is what a
    Java "RSA/ECB/PKCS1Padding" cipher produces when initialised with a
    private key for ENCRYPT_MODE. It is not a hash-then-sign signature.
    """
    k = _block_size(private_key)
    if len(data) > k - PKCS1_OVERHEAD:
        raise EncodingError(f"data too long for key: {len(data)} > {k - PKCS1_OVERHEAD}")
    block = b"\x00\x01" + b"\xff" * (k - 3 - len(data)) + b"\x00" + data
    numbers = private_key.private_numbers()
    m = int.from_bytes(block, "big")
    c = pow(m, numbers.d, numbers.public_numbers.n)
    return c.to_bytes(k, "big")


def asymmetric_inverse(data: bytes, public_key: rsa.RSAPublicKey) -> bytes:
    if len(data) != _block_size(public_key):
        raise DecryptError("bad block length")
    try:
        return public_key.recover_data_from_signature(data, padding.PKCS1v15(), None)
    except (InvalidSignature, ValueError) as e:
        raise DecryptError("unable to recover data") from e


def digest(data: bytes) -> str:
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


def file_digest(path: str) -> str:
    md5 = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            md5.update(chunk)
    return base64.b64encode(md5.digest()).decode("ascii")


def load_private_key(path: str) -> rsa.RSAPrivateKey:
    with open(path, "rb") as f:
        key = serialization.load_pem_private_key(f.read(), password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"not an RSA private key: {path}")
    return key


def load_public_key(path: str) -> rsa.RSAPublicKey:
    with open(path, "rb") as f:
        key = serialization.load_pem_public_key(f.read())
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError(f"not an RSA public key: {path}")
    return key
