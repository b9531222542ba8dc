# src/faucet/runtime/config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from faucet.runtime.errors import FaucetError

Json = Dict[str, Any]

DEFAULT_NODE_URLS: Tuple[str, ...] = (
    "https://api.hive.blog",
    "https://api.hivekings.com",
    "https://anyx.io",
)

# Values shipped in the sample .env; treat them as unset.
_PLACEHOLDER_KEYS = {"your_active_key_here", "your_memo_key_here", "your_posting_key_here"}

_ALLOWED_MODES = {"dev", "prod"}

DEFAULT_TX_SIGNER = "faucet.ledger.signing:sign_transaction"


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except Exception:
        return int(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _as_decimal(v: Any, default: Decimal) -> Decimal:
    try:
        return Decimal(str(v)) if v is not None else Decimal(default)
    except (InvalidOperation, ValueError):
        return Decimal(default)


def _as_urls(v: Any, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if v is None:
        return tuple(default)
    if isinstance(v, (list, tuple)):
        items = [str(x).strip() for x in v]
    else:
        items = [x.strip() for x in str(v).split(",")]
    out = tuple(x for x in items if x)
    return out or tuple(default)


def _secret(v: Any) -> str:
    s = str(v or "").strip()
    if s in _PLACEHOLDER_KEYS:
        return ""
    return s


@dataclass(frozen=True)
class FaucetConfig:
    mode: str  # "dev" | "prod"
    data_dir: str

    # Ledger source
    node_urls: Tuple[str, ...]
    rpc_timeout_s: int
    custom_json_id: str

    # Block pump
    save_interval: int
    poll_interval_ms: int
    error_backoff_ms: int
    start_block: int
    monitor_autostart: bool

    # Creator (faucet operator) account
    creator_account: str
    creator_active_key: str
    creator_memo_key: str
    tx_signer: str  # "module:callable" resolved at service start
    memo_min_balance: Decimal
    memo_transfer_amount: str

    # Mail transport
    email_host: str
    email_port: int
    email_user: str
    email_pass: str
    email_from: str

    api_host: str
    api_port: int
    log_level: str

    @property
    def cursor_path(self) -> Path:
        return Path(self.data_dir) / "last_block.json"

    @property
    def pending_path(self) -> Path:
        return Path(self.data_dir) / "pending_credentials.json"

    @property
    def quota_path(self) -> Path:
        return Path(self.data_dir) / "authorized_users.json"

    @property
    def lock_path(self) -> Path:
        return Path(self.data_dir) / "faucet.lock"


def default_faucet_config() -> FaucetConfig:
    return FaucetConfig(
        mode="prod",
        data_dir="./data",
        node_urls=DEFAULT_NODE_URLS,
        rpc_timeout_s=15,
        custom_json_id="hive_account_faucet",
        save_interval=20,
        poll_interval_ms=3_000,
        error_backoff_ms=5_000,
        start_block=0,
        monitor_autostart=True,
        creator_account="",
        creator_active_key="",
        creator_memo_key="",
        tx_signer=DEFAULT_TX_SIGNER,
        memo_min_balance=Decimal("0.001"),
        memo_transfer_amount="0.001 HBD",
        email_host="smtp.gmail.com",
        email_port=587,
        email_user="",
        email_pass="",
        email_from="",
        api_host="127.0.0.1",
        api_port=3000,
        log_level="INFO",
    )


def validate_faucet_config(cfg: FaucetConfig) -> None:
    """Fail-fast validation for operator config.

    A misconfigured faucet must refuse to start rather than run in a mode
    where requests are silently dropped.
    """
    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise FaucetError("invalid_config", f"mode must be one of {sorted(_ALLOWED_MODES)}; got: {cfg.mode!r}")

    if not str(cfg.data_dir or "").strip():
        raise FaucetError("invalid_config", "data_dir must be a non-empty string")

    if not cfg.node_urls:
        raise FaucetError("invalid_config", "at least one ledger node url is required")
    for url in cfg.node_urls:
        if not (url.startswith("https://") or url.startswith("http://")):
            raise FaucetError("invalid_config", f"node url must be http(s): {url!r}")

    if not str(cfg.custom_json_id or "").strip():
        raise FaucetError("invalid_config", "custom_json_id must be a non-empty string")

    if int(cfg.save_interval) < 1:
        raise FaucetError("invalid_config", f"save_interval must be >= 1; got: {cfg.save_interval}")

    if int(cfg.poll_interval_ms) < 100:
        # Tight polling hammers public RPC nodes.
        raise FaucetError("invalid_config", f"poll_interval_ms must be >= 100; got: {cfg.poll_interval_ms}")

    if int(cfg.error_backoff_ms) < int(cfg.poll_interval_ms):
        raise FaucetError("invalid_config", "error_backoff_ms must be >= poll_interval_ms")

    if int(cfg.start_block) < 0:
        raise FaucetError("invalid_config", f"start_block must be >= 0; got: {cfg.start_block}")

    module_name, _, attr = str(cfg.tx_signer or "").partition(":")
    if not module_name.strip() or not attr.strip():
        raise FaucetError("invalid_config", f"tx_signer must look like 'module:callable'; got: {cfg.tx_signer!r}")

    if cfg.memo_min_balance < 0:
        raise FaucetError("invalid_config", "memo_min_balance must be >= 0")

    if int(cfg.api_port) <= 0 or int(cfg.api_port) > 65535:
        raise FaucetError("invalid_config", f"api_port must be 1..65535; got: {cfg.api_port}")

    if int(cfg.email_port) <= 0 or int(cfg.email_port) > 65535:
        raise FaucetError("invalid_config", f"email_port must be 1..65535; got: {cfg.email_port}")


def _apply_mapping(base: FaucetConfig, raw: Json) -> FaucetConfig:
    d = base
    return FaucetConfig(
        mode=_as_str(raw.get("mode"), d.mode).strip().lower(),
        data_dir=_as_str(raw.get("data_dir"), d.data_dir),
        node_urls=_as_urls(raw.get("node_urls"), d.node_urls),
        rpc_timeout_s=_as_int(raw.get("rpc_timeout_s"), d.rpc_timeout_s),
        custom_json_id=_as_str(raw.get("custom_json_id"), d.custom_json_id),
        save_interval=_as_int(raw.get("save_interval"), d.save_interval),
        poll_interval_ms=_as_int(raw.get("poll_interval_ms"), d.poll_interval_ms),
        error_backoff_ms=_as_int(raw.get("error_backoff_ms"), d.error_backoff_ms),
        start_block=_as_int(raw.get("start_block"), d.start_block),
        monitor_autostart=_as_bool(raw.get("monitor_autostart"), d.monitor_autostart),
        creator_account=_as_str(raw.get("creator_account"), d.creator_account).strip(),
        creator_active_key=_secret(raw.get("creator_active_key")) or d.creator_active_key,
        creator_memo_key=_secret(raw.get("creator_memo_key")) or d.creator_memo_key,
        tx_signer=_as_str(raw.get("tx_signer"), d.tx_signer).strip(),
        memo_min_balance=_as_decimal(raw.get("memo_min_balance"), d.memo_min_balance),
        memo_transfer_amount=_as_str(raw.get("memo_transfer_amount"), d.memo_transfer_amount),
        email_host=_as_str(raw.get("email_host"), d.email_host),
        email_port=_as_int(raw.get("email_port"), d.email_port),
        email_user=_as_str(raw.get("email_user"), d.email_user),
        email_pass=_as_str(raw.get("email_pass"), d.email_pass),
        email_from=_as_str(raw.get("email_from"), d.email_from),
        api_host=_as_str(raw.get("api_host"), d.api_host),
        api_port=_as_int(raw.get("api_port"), d.api_port),
        log_level=_as_str(raw.get("log_level"), d.log_level).upper(),
    )


def read_faucet_config_file(path: str, *, base: Optional[FaucetConfig] = None) -> FaucetConfig:
    p = Path(path)
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise FaucetError("invalid_config", f"cannot read config file {path!r}", str(e)) from e
    if not isinstance(raw, dict):
        raise FaucetError("invalid_config", "faucet config must be a JSON object")
    return _apply_mapping(base or default_faucet_config(), raw)


# Environment variable -> config field.
_ENV_FIELDS = {
    "FAUCET_MODE": "mode",
    "FAUCET_DATA_DIR": "data_dir",
    "FAUCET_NODE_URLS": "node_urls",
    "FAUCET_RPC_TIMEOUT_S": "rpc_timeout_s",
    "FAUCET_CUSTOM_JSON_ID": "custom_json_id",
    "FAUCET_BLOCK_SAVE_INTERVAL": "save_interval",
    "FAUCET_POLL_INTERVAL_MS": "poll_interval_ms",
    "FAUCET_ERROR_BACKOFF_MS": "error_backoff_ms",
    "FAUCET_START_BLOCK": "start_block",
    "FAUCET_MONITOR_AUTOSTART": "monitor_autostart",
    "FAUCET_CREATOR_ACCOUNT": "creator_account",
    "FAUCET_CREATOR_ACTIVE_KEY": "creator_active_key",
    "FAUCET_CREATOR_MEMO_KEY": "creator_memo_key",
    "FAUCET_TX_SIGNER": "tx_signer",
    "FAUCET_MEMO_MIN_BALANCE": "memo_min_balance",
    "FAUCET_MEMO_TRANSFER_AMOUNT": "memo_transfer_amount",
    "FAUCET_EMAIL_HOST": "email_host",
    "FAUCET_EMAIL_PORT": "email_port",
    "FAUCET_EMAIL_USER": "email_user",
    "FAUCET_EMAIL_PASS": "email_pass",
    "FAUCET_EMAIL_FROM": "email_from",
    "FAUCET_API_HOST": "api_host",
    "FAUCET_API_PORT": "api_port",
    "FAUCET_LOG_LEVEL": "log_level",
}


# Names used by existing deployments; FAUCET_* wins when both are set.
_LEGACY_ENV_FIELDS = {
    "HIVE_NODE_URL": "node_urls",
    "BLOCK_SAVE_INTERVAL": "save_interval",
    "LAST_PROCESSED_BLOCK": "start_block",
    "CREATING_ACCOUNT_USERNAME": "creator_account",
    "CREATING_ACCOUNT_ACTIVE_KEY": "creator_active_key",
    "CREATING_ACCOUNT_MEMO_KEY": "creator_memo_key",
    "EMAIL_USER": "email_user",
    "EMAIL_APP_PASSWORD": "email_pass",
    "PORT": "api_port",
}


def _env_overrides() -> Json:
    out: Json = {}
    for env_name, field_name in _LEGACY_ENV_FIELDS.items():
        v = os.environ.get(env_name)
        if v is not None and v.strip():
            out[field_name] = v
    for env_name, field_name in _ENV_FIELDS.items():
        v = os.environ.get(env_name)
        if v is not None and v.strip():
            out[field_name] = v
    return out


def load_faucet_config(*, config_path: Optional[str] = None) -> FaucetConfig:
    """Resolve config: defaults, then optional JSON file, then FAUCET_* env.

    The result is validated; invalid config raises FaucetError so startup aborts.
    """
    cfg = default_faucet_config()

    p = config_path or os.environ.get("FAUCET_CONFIG_PATH")
    if p:
        cfg = read_faucet_config_file(p, base=cfg)

    overrides = _env_overrides()
    if overrides:
        cfg = _apply_mapping(cfg, overrides)

    validate_faucet_config(cfg)
    return cfg


def with_overrides(cfg: FaucetConfig, **changes: Any) -> FaucetConfig:
    """Return a validated copy of cfg with fields replaced."""
    out = replace(cfg, **changes)
    validate_faucet_config(out)
    return out
