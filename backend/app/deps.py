from fastapi import Header, HTTPException, Depends
from .db import get_conn
from .security import extract_bearer_token, hash_session_token
from datetime import datetime, timezone
from typing import Optional


def get_session(authorization: Optional[str] = Header(None)):
    token = extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="missing authorization header")
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, u.email, s.expires_at, s.is_active, s.active_location_id
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token_hash = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid or expired token")
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "email": row["email"],
                "active_location_id": row["active_location_id"],
            }


def get_current_user(session=Depends(get_session)):
    return {"user_id": session["user_id"], "email": session["email"]}


def get_location_id(
    x_location_id: Optional[str] = Header(None, alias="X-Location-Id"),
    session=Depends(get_session),
) -> Optional[str]:
    # Admin screens may operate across locations; handlers decide whether a location is required.
    if x_location_id and x_location_id.strip():
        return x_location_id.strip()
    if session.get("active_location_id"):
        return str(session["active_location_id"])
    return None
