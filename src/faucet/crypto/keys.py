# src/faucet/crypto/keys.py
"""Hive account key material.

Seeds ("master passwords") and the role keys derived from them follow the
ledger's conventions so that any Hive wallet can import the result:

  - private key for a role = sha256(account_name + role + seed) on secp256k1
  - private keys travel as WIF (0x80 prefix, double-sha256 checksum)
  - public keys travel as "STM" + base58(compressed point + ripemd160[:4])
"""

from __future__ import annotations

import hashlib
import secrets
from typing import Dict

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from faucet.runtime.models import ROLES, KeyPair

# Base58 drops 0, O, I and l to avoid visually ambiguous characters.
BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {c: i for i, c in enumerate(BASE58_ALPHABET)}

SEED_PREFIX = "P5"
SEED_BODY_LENGTH = 50
PUBLIC_KEY_PREFIX = "STM"
_WIF_VERSION = b"\x80"

_CURVE = ec.SECP256K1()
_CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


def _sha256(b: bytes) -> bytes:
    return hashlib.sha256(b).digest()


def _ripemd160(b: bytes) -> bytes:
    h = hashlib.new("ripemd160")
    h.update(b)
    return h.digest()


def b58encode(data: bytes) -> str:
    n = int.from_bytes(data, "big")
    out = []
    while n > 0:
        n, rem = divmod(n, 58)
        out.append(BASE58_ALPHABET[rem])
    pad = len(data) - len(data.lstrip(b"\x00"))
    return BASE58_ALPHABET[0] * pad + "".join(reversed(out))


def b58decode(s: str) -> bytes:
    n = 0
    for ch in s:
        try:
            n = n * 58 + _B58_INDEX[ch]
        except KeyError:
            raise ValueError(f"invalid base58 character: {ch!r}") from None
    body = n.to_bytes((n.bit_length() + 7) // 8, "big") if n else b""
    pad = len(s) - len(s.lstrip(BASE58_ALPHABET[0]))
    return b"\x00" * pad + body


def generate_seed() -> str:
    """Random master password: fixed prefix + 50 base58 characters (~293 bits)."""
    return SEED_PREFIX + "".join(secrets.choice(BASE58_ALPHABET) for _ in range(SEED_BODY_LENGTH))


def private_key_from_seed(seed_text: str) -> ec.EllipticCurvePrivateKey:
    scalar = int.from_bytes(_sha256(seed_text.encode("utf-8")), "big")
    if not 0 < scalar < _CURVE_ORDER:
        raise ValueError("seed hashes outside the curve order")
    return ec.derive_private_key(scalar, _CURVE)


def private_key_to_wif(key: ec.EllipticCurvePrivateKey) -> str:
    raw = key.private_numbers().private_value.to_bytes(32, "big")
    payload = _WIF_VERSION + raw
    return b58encode(payload + _sha256(_sha256(payload))[:4])


def private_key_from_wif(wif: str) -> ec.EllipticCurvePrivateKey:
    data = b58decode(str(wif or "").strip())
    if len(data) != 37:
        raise ValueError("WIF must decode to 37 bytes")
    payload, checksum = data[:-4], data[-4:]
    if _sha256(_sha256(payload))[:4] != checksum:
        raise ValueError("WIF checksum mismatch")
    if payload[:1] != _WIF_VERSION:
        raise ValueError("WIF version byte must be 0x80")
    return ec.derive_private_key(int.from_bytes(payload[1:], "big"), _CURVE)


def public_key_bytes(key: ec.EllipticCurvePublicKey) -> bytes:
    return key.public_bytes(Encoding.X962, PublicFormat.CompressedPoint)


def public_key_to_str(key: ec.EllipticCurvePublicKey, *, prefix: str = PUBLIC_KEY_PREFIX) -> str:
    compressed = public_key_bytes(key)
    return prefix + b58encode(compressed + _ripemd160(compressed)[:4])


def public_key_from_str(text: str, *, prefix: str = PUBLIC_KEY_PREFIX) -> ec.EllipticCurvePublicKey:
    s = str(text or "").strip()
    if not s.startswith(prefix):
        raise ValueError(f"public key must start with {prefix}")
    data = b58decode(s[len(prefix):])
    if len(data) != 37:
        raise ValueError("public key must decode to 37 bytes")
    compressed, checksum = data[:-4], data[-4:]
    if _ripemd160(compressed)[:4] != checksum:
        raise ValueError("public key checksum mismatch")
    return ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, compressed)


def wif_to_public(wif: str) -> str:
    return public_key_to_str(private_key_from_wif(wif).public_key())


def derive_key_pair(account_name: str, role: str, seed: str) -> KeyPair:
    key = private_key_from_seed(f"{account_name}{role}{seed}")
    return KeyPair(private=private_key_to_wif(key), public=public_key_to_str(key.public_key()))


def derive_account_keys(account_name: str, seed: str) -> Dict[str, KeyPair]:
    """Owner/active/posting/memo key pairs. Same inputs always give the same keys."""
    return {role: derive_key_pair(account_name, role, seed) for role in ROLES}
