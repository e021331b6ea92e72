"""
credit_policy.py

Credits: one credit = one photo analysis.

- balance and expiry live in Supabase (user_credits); the server only reads
  them and asks the deduct_credit RPC to decrement
- a balance is usable through the whole expiry day (UTC) and counts as zero
  from the next day on
- charge_for_scan() persists the scan first, then deducts; if the deduction
  fails the scan row is deleted again so nobody gets a free analysis
  (best effort: a crash between the two calls leaves an uncharged scan)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Tuple

from records_store import RecordsError, SupabaseStore

logger = logging.getLogger(__name__)


class CreditError(RuntimeError):
    pass


@dataclass(frozen=True)
class CreditAccount:
    balance: int
    expires_at: Optional[datetime] = None


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def parse_expires_at(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            raise CreditError(f"unparsable expires_at: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def account_from_row(row: Optional[Dict[str, Any]]) -> CreditAccount:
    if not row:
        return CreditAccount(balance=0)
    try:
        balance = int(row.get("credits") or 0)
    except (TypeError, ValueError):
        balance = 0
    return CreditAccount(balance=max(0, balance), expires_at=parse_expires_at(row.get("expires_at")))


def is_expired(account: CreditAccount, today: Optional[date] = None) -> bool:
    if account.expires_at is None:
        return False
    today = today or _utc_today()
    return today > account.expires_at.date()


def effective_credits(account: CreditAccount, today: Optional[date] = None) -> int:
    if is_expired(account, today):
        return 0
    return account.balance


def days_left(account: CreditAccount, today: Optional[date] = None) -> Optional[int]:
    if account.expires_at is None:
        return None
    today = today or _utc_today()
    return max(0, (account.expires_at.date() - today).days)


def describe_credits(account: CreditAccount, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or _utc_today()
    return {
        "credits": effective_credits(account, today),
        "expiresAt": account.expires_at.isoformat() if account.expires_at else None,
        "daysLeft": days_left(account, today),
        "expired": is_expired(account, today),
    }


def load_account(store: SupabaseStore, user_id: str) -> CreditAccount:
    return account_from_row(store.fetch_credit_row(user_id))


def charge_for_scan(
    store: SupabaseStore,
    user_id: str,
    scan_row: Dict[str, Any],
) -> Tuple[Dict[str, Any], int]:
    """
    Insert the scan, then deduct one credit.
    Returns (saved scan, new balance). Raises CreditError if the deduction
    fails, after deleting the scan that was just written.
    """
    saved = store.insert_scan(scan_row)
    scan_id = str(saved.get("id") or "")

    try:
        new_balance = store.deduct_credit(user_id)
    except RecordsError as e:
        logger.error("[Credits] deduct failed for user=%s: %s", user_id, e)
        new_balance = None

    if new_balance is None or new_balance < 0:
        _rollback_scan(store, user_id, scan_id)
        raise CreditError("Credit deduction failed")

    logger.info("[Credits] user=%s charged 1 credit, %d left", user_id, new_balance)
    return saved, new_balance


def _rollback_scan(store: SupabaseStore, user_id: str, scan_id: str) -> None:
    if not scan_id:
        logger.error("[Credits] cannot roll back scan without id (user=%s)", user_id)
        return
    try:
        deleted = store.delete_scan(user_id, scan_id)
    except RecordsError:
        logger.exception("[Credits] rollback of scan %s failed (user=%s)", scan_id, user_id)
        return
    if not deleted:
        logger.error("[Credits] rollback of scan %s deleted nothing (user=%s)", scan_id, user_id)
    else:
        logger.warning("[Credits] scan %s rolled back after failed deduction", scan_id)
