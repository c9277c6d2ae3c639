from fastapi import Header, HTTPException, Depends
from .db import get_conn, get_admin_conn
from .security import hash_session_token, verify_device_token
from datetime import datetime, timezone
from typing import Optional
import uuid


def _extract_session_token(authorization: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    raise HTTPException(status_code=401, detail="missing token")


def get_session(authorization: Optional[str] = Header(None)):
    token = _extract_session_token(authorization)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id AS session_id, user_id, expires_at, is_active, active_store_id
                FROM auth_sessions
                WHERE token = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "active_store_id": row["active_store_id"],
            }


def get_current_user(session=Depends(get_session)):
    return {"user_id": str(session["user_id"])}


def get_store_id(
    x_store_id: Optional[str] = Header(None, alias="X-Store-Id"),
    session=Depends(get_session),
) -> Optional[str]:
    # Operators without a store header or active store act across all stores.
    if x_store_id:
        try:
            return str(uuid.UUID(x_store_id.strip()))
        except ValueError:
            raise HTTPException(status_code=400, detail="invalid X-Store-Id")
    if session.get("active_store_id"):
        return str(session["active_store_id"])
    return None


def require_device(
    device_id: uuid.UUID = Header(..., alias="X-Device-Id"),
    device_token: str = Header(..., alias="X-Device-Token"),
):
    # Registers don't send a store id; the device row decides which store they write to.
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT store_id, device_token_hash
                FROM pos_devices
                WHERE id = %s
                """,
                (device_id,),
            )
            row = cur.fetchone()
            if not row or not verify_device_token(device_token, row["device_token_hash"]):
                raise HTTPException(status_code=401, detail="invalid device token")
            return {"device_id": str(device_id), "store_id": str(row["store_id"])}
