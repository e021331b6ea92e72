"""
records_store.py

Supabase access for pets / scans / credits.

Every request gets its own client carrying the caller's access token in the
Authorization header, so Postgres row-level security sees the real user.
Queries still filter on user_id explicitly; RLS is the second fence.

Tables:
  pets(id, user_id, name, species, breed, age_years, age_months, weight, created_at)
  scans(id, user_id, pet_id, category, severity, title, observations, possible_causes,
        vet_will_examine, questions_to_ask, urgency, next_steps, financial_forecast,
        disclaimer, created_at)
  user_credits(user_id, credits, expires_at)

RPC:
  deduct_credit(p_user_id) -> new balance (refuses to go below zero)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from supabase import Client, ClientOptions, create_client

logger = logging.getLogger(__name__)

PETS_TABLE = "pets"
SCANS_TABLE = "scans"
CREDITS_TABLE = "user_credits"
DEDUCT_CREDIT_RPC = "deduct_credit"


class RecordsError(RuntimeError):
    pass


def _first(rows: Any) -> Optional[Dict[str, Any]]:
    if isinstance(rows, list):
        return rows[0] if rows else None
    if isinstance(rows, dict):
        return rows
    return None


class SupabaseStore:
    def __init__(self, client: Client, access_token: str):
        self.client = client
        self.access_token = access_token

    # ------------------------------------------------
    # auth
    # ------------------------------------------------
    def get_user(self) -> Dict[str, Any]:
        """Resolves the bearer token to {id, email}. Raises RecordsError if rejected."""
        try:
            resp = self.client.auth.get_user(self.access_token)
        except Exception as e:
            raise RecordsError(f"auth.get_user failed: {e}") from e

        user = getattr(resp, "user", None) if resp is not None else None
        if user is None or not getattr(user, "id", None):
            raise RecordsError("no user for token")
        return {"id": str(user.id), "email": getattr(user, "email", None)}

    # ------------------------------------------------
    # credits
    # ------------------------------------------------
    def fetch_credit_row(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            resp = (
                self.client.table(CREDITS_TABLE)
                .select("credits, expires_at")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise RecordsError(f"credit lookup failed: {e}") from e
        return _first(resp.data)

    def deduct_credit(self, user_id: str) -> Optional[int]:
        """New balance, or None when the RPC refused (no credits left)."""
        try:
            resp = self.client.rpc(DEDUCT_CREDIT_RPC, {"p_user_id": user_id}).execute()
        except Exception as e:
            raise RecordsError(f"{DEDUCT_CREDIT_RPC} failed: {e}") from e

        data = resp.data
        if isinstance(data, list):
            data = data[0] if data else None
        if isinstance(data, dict):
            data = data.get("credits", data.get(DEDUCT_CREDIT_RPC))
        if data is None or isinstance(data, bool):
            return None
        try:
            return int(data)
        except (TypeError, ValueError):
            raise RecordsError(f"{DEDUCT_CREDIT_RPC} returned unexpected value: {data!r}")

    # ------------------------------------------------
    # scans
    # ------------------------------------------------
    def insert_scan(self, row: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self.client.table(SCANS_TABLE).insert(row).execute()
        except Exception as e:
            raise RecordsError(f"scan insert failed: {e}") from e
        saved = _first(resp.data)
        if not saved:
            raise RecordsError("scan insert returned no row")
        return saved

    def delete_scan(self, user_id: str, scan_id: str) -> bool:
        try:
            resp = (
                self.client.table(SCANS_TABLE)
                .delete()
                .eq("id", scan_id)
                .eq("user_id", user_id)
                .execute()
            )
        except Exception as e:
            raise RecordsError(f"scan delete failed: {e}") from e
        return bool(resp.data)

    def list_scans(self, user_id: str, pet_id: Optional[str] = None) -> List[Dict[str, Any]]:
        try:
            q = self.client.table(SCANS_TABLE).select("*").eq("user_id", user_id)
            if pet_id:
                q = q.eq("pet_id", pet_id)
            resp = q.order("created_at", desc=True).execute()
        except Exception as e:
            raise RecordsError(f"scan list failed: {e}") from e
        return list(resp.data or [])

    def get_scan(self, user_id: str, scan_id: str) -> Optional[Dict[str, Any]]:
        try:
            resp = (
                self.client.table(SCANS_TABLE)
                .select("*")
                .eq("id", scan_id)
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise RecordsError(f"scan lookup failed: {e}") from e
        return _first(resp.data)

    # ------------------------------------------------
    # pets
    # ------------------------------------------------
    def list_pets(self, user_id: str) -> List[Dict[str, Any]]:
        try:
            resp = (
                self.client.table(PETS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .execute()
            )
        except Exception as e:
            raise RecordsError(f"pet list failed: {e}") from e
        return list(resp.data or [])

    def get_pet(self, user_id: str, pet_id: str) -> Optional[Dict[str, Any]]:
        try:
            resp = (
                self.client.table(PETS_TABLE)
                .select("*")
                .eq("id", pet_id)
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise RecordsError(f"pet lookup failed: {e}") from e
        return _first(resp.data)

    def insert_pet(self, row: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self.client.table(PETS_TABLE).insert(row).execute()
        except Exception as e:
            raise RecordsError(f"pet insert failed: {e}") from e
        saved = _first(resp.data)
        if not saved:
            raise RecordsError("pet insert returned no row")
        return saved

    def update_pet(self, user_id: str, pet_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            resp = (
                self.client.table(PETS_TABLE)
                .update(fields)
                .eq("id", pet_id)
                .eq("user_id", user_id)
                .execute()
            )
        except Exception as e:
            raise RecordsError(f"pet update failed: {e}") from e
        return _first(resp.data)

    def delete_pet(self, user_id: str, pet_id: str) -> bool:
        try:
            resp = (
                self.client.table(PETS_TABLE)
                .delete()
                .eq("id", pet_id)
                .eq("user_id", user_id)
                .execute()
            )
        except Exception as e:
            raise RecordsError(f"pet delete failed: {e}") from e
        return bool(resp.data)


def create_user_store(supabase_url: str, anon_key: str, access_token: str) -> SupabaseStore:
    if not supabase_url or not anon_key:
        raise RecordsError("SUPABASE_URL / SUPABASE_ANON_KEY are not configured")

    client = create_client(
        supabase_url,
        anon_key,
        options=ClientOptions(
            headers={"Authorization": f"Bearer {access_token}"},
            auto_refresh_token=False,
            persist_session=False,
        ),
    )
    return SupabaseStore(client, access_token)
