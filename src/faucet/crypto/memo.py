# src/faucet/crypto/memo.py
"""Encrypted transfer memos in the Hive wallet format.

Layout of the base58 payload after the leading "#":

    from_pubkey(33) | to_pubkey(33) | nonce(u64 le) | check(u32 le) | varint len | ciphertext

The AES-256-CBC key and IV come from sha512(nonce | sha512(ecdh_x)), and
`check` is the first four bytes of sha256 of that digest. The plaintext is
a varint-length-prefixed UTF-8 string.
"""

from __future__ import annotations

import hashlib
import secrets
import struct
from typing import Optional, Tuple

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from faucet.crypto.keys import (
    b58decode,
    b58encode,
    private_key_from_wif,
    public_key_bytes,
    public_key_from_str,
)

MEMO_PREFIX = "#"


def varint(n: int) -> bytes:
    """Unsigned LEB128, the chain's length prefix."""
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            return bytes(out)


def _read_varint(buf: bytes, offset: int) -> Tuple[int, int]:
    shift = 0
    value = 0
    while True:
        if offset >= len(buf):
            raise ValueError("truncated varint")
        b = buf[offset]
        offset += 1
        value |= (b & 0x7F) << shift
        if not b & 0x80:
            return value, offset
        shift += 7
        if shift > 35:
            raise ValueError("varint too long")


def _shared_secret(priv: ec.EllipticCurvePrivateKey, pub: ec.EllipticCurvePublicKey) -> bytes:
    return hashlib.sha512(priv.exchange(ec.ECDH(), pub)).digest()


def _key_iv_check(shared: bytes, nonce: int) -> Tuple[bytes, bytes, int]:
    digest = hashlib.sha512(struct.pack("<Q", nonce) + shared).digest()
    check = struct.unpack("<I", hashlib.sha256(digest).digest()[:4])[0]
    return digest[:32], digest[32:48], check


def encode_memo(sender_private_wif: str, recipient_public: str, message: str, *, nonce: Optional[int] = None) -> str:
    """Encrypt `message` from the sender's memo key to the recipient's memo key.

    A leading "#" (the wallet convention for "encrypt this") is dropped.
    """
    if message.startswith(MEMO_PREFIX):
        message = message[len(MEMO_PREFIX):]
    priv = private_key_from_wif(sender_private_wif)
    to_pub = public_key_from_str(recipient_public)
    n = secrets.randbits(64) if nonce is None else int(nonce)

    key, iv, check = _key_iv_check(_shared_secret(priv, to_pub), n)

    raw = message.encode("utf-8")
    padder = padding.PKCS7(128).padder()
    padded = padder.update(varint(len(raw)) + raw) + padder.finalize()
    enc = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = enc.update(padded) + enc.finalize()

    payload = (
        public_key_bytes(priv.public_key())
        + public_key_bytes(to_pub)
        + struct.pack("<Q", n)
        + struct.pack("<I", check)
        + varint(len(ciphertext))
        + ciphertext
    )
    return MEMO_PREFIX + b58encode(payload)


def decode_memo(private_wif: str, memo: str) -> str:
    """Decrypt a memo with either party's private memo key."""
    if not memo.startswith(MEMO_PREFIX):
        return memo
    buf = b58decode(memo[len(MEMO_PREFIX):])
    if len(buf) < 33 + 33 + 8 + 4 + 1:
        raise ValueError("memo payload too short")
    from_b, to_b = buf[:33], buf[33:66]
    nonce = struct.unpack("<Q", buf[66:74])[0]
    check = struct.unpack("<I", buf[74:78])[0]
    size, offset = _read_varint(buf, 78)
    ciphertext = buf[offset:offset + size]

    priv = private_key_from_wif(private_wif)
    mine = public_key_bytes(priv.public_key())
    other_b = to_b if mine == from_b else from_b
    other = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), other_b)

    key, iv, expected = _key_iv_check(_shared_secret(priv, other), nonce)
    if expected != check:
        raise ValueError("memo checksum mismatch (wrong key?)")

    dec = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = dec.update(ciphertext) + dec.finalize()
    unpadder = padding.PKCS7(128).unpadder()
    plain = unpadder.update(padded) + unpadder.finalize()
    length, start = _read_varint(plain, 0)
    return plain[start:start + length].decode("utf-8")
