import hashlib
import hmac
from typing import Optional


def hash_session_token(token: str) -> str:
    # Sessions are stored as a one-way hash so a DB leak doesn't immediately grant access.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_session_token(token: str, token_hash: Optional[str]) -> bool:
    if not token or not token_hash:
        return False
    return hmac.compare_digest(hash_session_token(token), token_hash)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    raw = (authorization or "").strip()
    if not raw.lower().startswith("bearer "):
        return None
    token = raw.split(" ", 1)[1].strip()
    return token or None
