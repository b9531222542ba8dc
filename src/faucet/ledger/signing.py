"""Hive transaction signing.

A condenser-format transaction is serialized to the chain's binary layout,
hashed together with the chain id and signed with a compact recoverable
secp256k1 signature:

    header(1) = 27 + 4 + recovery_id | r(32) | s(32)

Nodes only accept canonical signatures (both r and s in [2**247, 2**255)),
so signing retries with a fresh nonce until one comes out canonical.

Only the operations the faucet broadcasts are serializable here.
"""

from __future__ import annotations

import calendar
import hashlib
import importlib
import struct
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, decode_dss_signature

from faucet.crypto.keys import private_key_from_wif, public_key_bytes, public_key_from_str, public_key_to_str
from faucet.crypto.memo import varint
from faucet.ledger.client import TransactionSigner
from faucet.runtime.errors import FaucetError, LedgerError

Json = Dict[str, Any]
Point = Optional[Tuple[int, int]]

# secp256k1 domain parameters.
_P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_G = (
    0x79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798,
    0x483ADA7726A3C4655DA4FBFC0E1108A8FD17B448A68554199C47D08FFB10D4B8,
)

_MAX_SIGN_ATTEMPTS = 64
_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Assets keep their pre-rename symbols on the wire.
_WIRE_SYMBOLS = {"HIVE": "STEEM", "HBD": "SBD", "VESTS": "VESTS", "STEEM": "STEEM", "SBD": "SBD"}
_NAI_SYMBOLS = {"@@000000021": "HIVE", "@@000000013": "HBD", "@@000000037": "VESTS"}


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _string(value: Any) -> bytes:
    raw = str(value if value is not None else "").encode("utf-8")
    return varint(len(raw)) + raw


def _public_key(text: str) -> bytes:
    return public_key_bytes(public_key_from_str(text))


def _asset(amount: Any) -> bytes:
    if isinstance(amount, dict):
        symbol = _NAI_SYMBOLS.get(str(amount.get("nai")), "")
        precision = int(amount.get("precision", 3))
        units = int(amount.get("amount"))
    else:
        text, _, symbol = str(amount or "").strip().partition(" ")
        precision = len(text.split(".", 1)[1]) if "." in text else 0
        units = int(Decimal(text).scaleb(precision))
    wire = _WIRE_SYMBOLS.get(symbol.strip())
    if wire is None:
        raise ValueError(f"unsupported asset symbol: {symbol!r}")
    return struct.pack("<qB", units, precision) + wire.encode("ascii").ljust(7, b"\x00")


def _authority(auth: Json) -> bytes:
    accounts = sorted((str(name), int(weight)) for name, weight in auth.get("account_auths") or [])
    keys = sorted((_public_key(key), int(weight)) for key, weight in auth.get("key_auths") or [])
    out = struct.pack("<I", int(auth.get("weight_threshold", 1)))
    out += varint(len(accounts)) + b"".join(_string(n) + struct.pack("<H", w) for n, w in accounts)
    out += varint(len(keys)) + b"".join(k + struct.pack("<H", w) for k, w in keys)
    return out


def _extensions(ext: Any) -> bytes:
    if ext:
        raise ValueError("extensions are not supported")
    return varint(0)


def _transfer(body: Json) -> bytes:
    return _string(body["from"]) + _string(body["to"]) + _asset(body["amount"]) + _string(body.get("memo", ""))


def _create_claimed_account(body: Json) -> bytes:
    return (
        _string(body["creator"])
        + _string(body["new_account_name"])
        + _authority(body["owner"])
        + _authority(body["active"])
        + _authority(body["posting"])
        + _public_key(body["memo_key"])
        + _string(body.get("json_metadata", ""))
        + _extensions(body.get("extensions"))
    )


# name -> (static_variant index, body serializer)
_OPERATIONS: Dict[str, Tuple[int, Callable[[Json], bytes]]] = {
    "transfer": (2, _transfer),
    "create_claimed_account": (23, _create_claimed_account),
}


def serialize_operation(op: List[Any]) -> bytes:
    name, body = op[0], op[1]
    if name not in _OPERATIONS:
        raise LedgerError("unsupported_operation", f"cannot serialize operation {name!r}")
    op_id, serialize = _OPERATIONS[name]
    try:
        return varint(op_id) + serialize(body)
    except (KeyError, TypeError, ValueError, InvalidOperation) as e:
        raise LedgerError("bad_operation", f"cannot serialize {name}: {e}") from e


def serialize_transaction(tx: Json) -> bytes:
    """Binary form of an unsigned transaction; `signatures` is not part of it."""
    try:
        expiration = calendar.timegm(datetime.strptime(str(tx["expiration"]), _TIME_FORMAT).timetuple())
        header = struct.pack("<HII", int(tx["ref_block_num"]), int(tx["ref_block_prefix"]), expiration)
    except (KeyError, ValueError, struct.error) as e:
        raise LedgerError("bad_transaction", f"invalid transaction header: {e}") from e
    ops = list(tx.get("operations") or [])
    if tx.get("extensions"):
        raise LedgerError("bad_transaction", "transaction extensions are not supported")
    return header + varint(len(ops)) + b"".join(serialize_operation(op) for op in ops) + varint(0)


def transaction_digest(tx: Json, chain_id: str) -> bytes:
    return hashlib.sha256(bytes.fromhex(chain_id) + serialize_transaction(tx)).digest()


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


def _point_add(a: Point, b: Point) -> Point:
    if a is None:
        return b
    if b is None:
        return a
    if a[0] == b[0]:
        if (a[1] + b[1]) % _P == 0:
            return None
        lam = 3 * a[0] * a[0] * pow(2 * a[1], -1, _P) % _P
    else:
        lam = (b[1] - a[1]) * pow(b[0] - a[0], -1, _P) % _P
    x = (lam * lam - a[0] - b[0]) % _P
    return x, (lam * (a[0] - x) - a[1]) % _P


def _point_mul(k: int, pt: Point) -> Point:
    out: Point = None
    while k:
        if k & 1:
            out = _point_add(out, pt)
        pt = _point_add(pt, pt)
        k >>= 1
    return out


def _recover_point(digest: bytes, r: int, s: int, recovery_id: int) -> Point:
    alpha = (pow(r, 3, _P) + 7) % _P
    beta = pow(alpha, (_P + 1) // 4, _P)
    if beta * beta % _P != alpha:
        return None
    y = beta if beta % 2 == recovery_id % 2 else _P - beta
    e = int.from_bytes(digest, "big")
    r_inv = pow(r, -1, _N)
    return _point_add(_point_mul(-e * r_inv % _N, _G), _point_mul(s * r_inv % _N, (r, y)))


def _is_canonical(v: int) -> bool:
    return (1 << 247) <= v < (1 << 255)


def sign_digest(digest: bytes, wif: str) -> bytes:
    """65-byte compact recoverable signature over a 32-byte digest."""
    key = private_key_from_wif(wif)
    numbers = key.public_key().public_numbers()
    own = (numbers.x, numbers.y)
    for _ in range(_MAX_SIGN_ATTEMPTS):
        r, s = decode_dss_signature(key.sign(digest, ec.ECDSA(Prehashed(hashes.SHA256()))))
        if s > _N // 2:
            s = _N - s
        if not (_is_canonical(r) and _is_canonical(s)):
            continue
        for recovery_id in (0, 1):
            if _recover_point(digest, r, s, recovery_id) == own:
                return bytes([31 + recovery_id]) + r.to_bytes(32, "big") + s.to_bytes(32, "big")
    raise LedgerError("sign_failed", "could not produce a canonical signature")


def recover_public_key(digest: bytes, signature: bytes) -> str:
    """STM public key that produced `signature` over `digest`."""
    if len(signature) != 65:
        raise ValueError("signature must be 65 bytes")
    recovery_id = (signature[0] - 27) & 3
    r = int.from_bytes(signature[1:33], "big")
    s = int.from_bytes(signature[33:], "big")
    pt = _recover_point(digest, r, s, recovery_id)
    if pt is None:
        raise ValueError("signature does not recover to a curve point")
    return public_key_to_str(ec.EllipticCurvePublicNumbers(pt[0], pt[1], ec.SECP256K1()).public_key())


def sign_transaction(tx: Json, wif: str, chain_id: str) -> Json:
    """Default TransactionSigner: returns `tx` with one more hex signature."""
    signature = sign_digest(transaction_digest(tx, chain_id), wif)
    out = dict(tx)
    out["signatures"] = list(tx.get("signatures") or []) + [signature.hex()]
    return out


def load_signer(entrypoint: str) -> TransactionSigner:
    """Resolve "package.module:callable" to a transaction signer."""
    module_name, _, attr = str(entrypoint or "").strip().partition(":")
    if not module_name or not attr:
        raise FaucetError("invalid_config", f"tx_signer must look like 'module:callable'; got: {entrypoint!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise FaucetError("invalid_config", f"cannot import transaction signer module {module_name!r}", str(e)) from e
    signer = getattr(module, attr, None)
    if not callable(signer):
        raise FaucetError("invalid_config", f"transaction signer {attr!r} not found in {module_name}")
    return signer
