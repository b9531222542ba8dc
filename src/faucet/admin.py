# src/faucet/admin.py
"""Operator tool for the faucet's JSON ledgers.

    python -m faucet.admin list-users
    python -m faucet.admin add-user alice 10 --email alice@example.com
    python -m faucet.admin give-tokens alice 5
    python -m faucet.admin pending
    python -m faucet.admin check-acts faucetbank

Safe to run while the service is up: every ledger mutation takes the
per-file lock the service uses.
"""

from __future__ import annotations

import argparse
import json
from typing import Any, Callable, Dict, List, Optional

from faucet.email.smtp_sender import SmtpMailer
from faucet.env import load_dotenv_if_present
from faucet.ledger.client import JsonRpcLedgerClient
from faucet.runtime.config import FaucetConfig, load_faucet_config, with_overrides
from faucet.runtime.errors import FaucetError
from faucet.runtime.models import AuthorizedRequester
from faucet.runtime.pending_ledger import PendingCredentialsLedger
from faucet.runtime.quota_ledger import QuotaLedger

Json = Dict[str, Any]


def _print_result(res: Json) -> int:
    mark = "✅" if res.get("ok") else "❌"
    print(f"{mark} {res.get('message', '')}")
    return 0 if res.get("ok") else 1


def _format_requester(r: AuthorizedRequester) -> str:
    lines = [
        f"👤 {r.id}",
        f"   Status: {'✅ Active' if r.is_active else '❌ Inactive'}",
        f"   Tokens: {r.tokens_used}/{r.tokens_allocated} used ({r.tokens_remaining} remaining)",
        f"   Created: {r.created_at}",
        f"   Last Used: {r.last_used or 'Never'}",
    ]
    if r.email:
        lines.append(f"   Email: {r.email}")
    if r.notes:
        lines.append(f"   Notes: {r.notes}")
    return "\n".join(lines)


def _quota(cfg: FaucetConfig) -> QuotaLedger:
    return QuotaLedger(cfg.quota_path)


def _pending(cfg: FaucetConfig) -> PendingCredentialsLedger:
    return PendingCredentialsLedger(cfg.pending_path)


def cmd_list_users(cfg: FaucetConfig, args: argparse.Namespace) -> int:
    q = _quota(cfg)
    stats = q.stats()
    print("📋 Authorized Users")
    print(f"Total Users: {stats.get('total_users', 0)}")
    print(f"Total Tokens Allocated: {stats.get('total_tokens_allocated', 0)}")
    print(f"Total Tokens Used: {stats.get('total_tokens_used', 0)}")
    print(f"Last Updated: {stats.get('last_updated', '')}")
    print("")
    for r in q.list_all():
        print(_format_requester(r))
        print("")
    return 0


def cmd_user(cfg: FaucetConfig, args: argparse.Namespace) -> int:
    r = _quota(cfg).get(args.name)
    if r is None:
        print(f"❌ User '{args.name}' not found")
        return 1
    print(_format_requester(r))
    return 0


def cmd_add_user(cfg: FaucetConfig, args: argparse.Namespace) -> int:
    return _print_result(_quota(cfg).add(args.name, args.tokens, email=args.email, notes=args.notes))


def cmd_give_tokens(cfg: FaucetConfig, args: argparse.Namespace) -> int:
    return _print_result(_quota(cfg).grant_tokens(args.name, args.count))


def cmd_set_tokens(cfg: FaucetConfig, args: argparse.Namespace) -> int:
    return _print_result(_quota(cfg).set_tokens(args.name, args.count))


def cmd_set_email(cfg: FaucetConfig, args: argparse.Namespace) -> int:
    return _print_result(_quota(cfg).set_email(args.name, args.email))


def cmd_activate(cfg: FaucetConfig, args: argparse.Namespace) -> int:
    return _print_result(_quota(cfg).set_active(args.name, True))


def cmd_deactivate(cfg: FaucetConfig, args: argparse.Namespace) -> int:
    return _print_result(_quota(cfg).set_active(args.name, False))


def cmd_stats(cfg: FaucetConfig, args: argparse.Namespace) -> int:
    s = _quota(cfg).stats()
    total = int(s.get("total_users", 0))
    active = int(s.get("active_users", 0))
    print("📊 Database Statistics")
    print(f"Total Users: {total}")
    print(f"Active Users: {active}")
    print(f"Inactive Users: {total - active}")
    print(f"Total Tokens Allocated: {s.get('total_tokens_allocated', 0)}")
    print(f"Total Tokens Used: {s.get('total_tokens_used', 0)}")
    print(f"Tokens Remaining: {s.get('total_tokens_remaining', 0)}")
    print(f"Database Created: {s.get('created_at', '')}")
    print(f"Last Updated: {s.get('last_updated', '')}")
    return 0


def cmd_pending(cfg: FaucetConfig, args: argparse.Namespace) -> int:
    records = _pending(cfg).list_all()
    if args.json:
        out: List[Json] = []
        for c in records:
            j = c.to_json()
            if not args.show_secrets:
                j.pop("seed", None)
                j["keys"] = c.public_keys()
            out.append(j)
        print(json.dumps(out, indent=2))
        return 0

    print(f"🔐 Pending credentials: {len(records)}")
    for c in records:
        print(f"  {c.resource_name}  requester=@{c.requester_id}  tx={c.creation_tx_id}  created={c.created_at}")
        if args.show_secrets:
            print(f"    Master Password: {c.seed}")
    return 0


def cmd_pending_remove(cfg: FaucetConfig, args: argparse.Namespace) -> int:
    if _pending(cfg).remove(args.name):
        print(f"✅ Removed pending credentials for {args.name}")
        return 0
    print(f"❌ No pending credentials for {args.name}")
    return 1


def cmd_check_acts(cfg: FaucetConfig, args: argparse.Namespace) -> int:
    account = args.account or cfg.creator_account
    if not account:
        print("❌ Please specify an account (or set FAUCET_CREATOR_ACCOUNT)")
        return 2

    client = JsonRpcLedgerClient(cfg.node_urls, timeout_s=cfg.rpc_timeout_s)
    accounts = client.get_accounts([account])
    if not accounts:
        print(f"❌ Account @{account} not found!")
        return 1
    a = accounts[0]
    acts = int(a.get("pending_claimed_accounts") or 0)
    print(f"👤 Account: @{account}")
    print(f"🎫 Pending ACTs: {acts}")
    print(f"💎 HIVE: {a.get('balance')}")
    print(f"💵 HBD: {a.get('hbd_balance')}")
    print(f"⚡ Vesting: {a.get('vesting_shares')}")
    if acts > 0:
        print(f"✅ @{account} can create {acts} new accounts")
        return 0
    print(f"⚠️  @{account} has no Account Creation Tokens")
    return 1


def cmd_email_test(cfg: FaucetConfig, args: argparse.Namespace) -> int:
    mailer = SmtpMailer.from_config(cfg)
    ok, message = mailer.verify_connection()
    print(f"{'✅' if ok else '❌'} {message}")
    if not ok or not args.to:
        return 0 if ok else 1

    mailer.send(
        to_email=args.to,
        subject="Hive Account Faucet - Test Email",
        body_text="If you can read this, the faucet's email configuration works.\n",
    )
    print(f"✅ Test email sent to {args.to}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="python -m faucet.admin", description="Hive account faucet administration")
    p.add_argument("--data-dir", default=None, help="override FAUCET_DATA_DIR")
    p.add_argument("--config", default=None, help="JSON config file (default: FAUCET_CONFIG_PATH)")
    sub = p.add_subparsers(dest="command", required=True)

    def add(name: str, fn: Callable[[FaucetConfig, argparse.Namespace], int], help_text: str, aliases=()):
        sp = sub.add_parser(name, help=help_text, aliases=list(aliases))
        sp.set_defaults(func=fn)
        return sp

    add("list-users", cmd_list_users, "list all authorized requesters", aliases=("list",))

    sp = add("user", cmd_user, "show one requester")
    sp.add_argument("name")

    sp = add("add-user", cmd_add_user, "authorize a new requester", aliases=("add",))
    sp.add_argument("name")
    sp.add_argument("tokens", nargs="?", type=int, default=5)
    sp.add_argument("--email", default=None)
    sp.add_argument("--notes", default="")

    sp = add("give-tokens", cmd_give_tokens, "add tokens to a requester", aliases=("give",))
    sp.add_argument("name")
    sp.add_argument("count", type=int)

    sp = add("set-tokens", cmd_set_tokens, "set a requester's total allocation", aliases=("set",))
    sp.add_argument("name")
    sp.add_argument("count", type=int)

    sp = add("set-email", cmd_set_email, "set (or clear with '') a requester's email")
    sp.add_argument("name")
    sp.add_argument("email")

    sp = add("activate", cmd_activate, "activate a requester")
    sp.add_argument("name")

    sp = add("deactivate", cmd_deactivate, "deactivate a requester")
    sp.add_argument("name")

    add("stats", cmd_stats, "aggregate statistics")

    sp = add("pending", cmd_pending, "list credentials awaiting manual delivery")
    sp.add_argument("--json", action="store_true")
    sp.add_argument("--show-secrets", action="store_true", help="include master passwords")

    sp = add("pending-remove", cmd_pending_remove, "drop a pending record after manual redelivery")
    sp.add_argument("name")

    sp = add("check-acts", cmd_check_acts, "show claimed account tokens and balances")
    sp.add_argument("account", nargs="?", default=None)

    sp = add("email-test", cmd_email_test, "verify SMTP connectivity")
    sp.add_argument("--to", default=None, help="also send a test message to this address")

    return p


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv_if_present()
    args = build_parser().parse_args(argv)
    try:
        cfg = load_faucet_config(config_path=args.config)
        if args.data_dir:
            cfg = with_overrides(cfg, data_dir=args.data_dir)
        return int(args.func(cfg, args))
    except FaucetError as e:
        print(f"❌ {e.code}: {e.reason}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
