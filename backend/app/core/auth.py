# core/auth.py
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from firebase_admin import auth
from typing import Optional
import logging

from app.models.user_model import User
from app.core.firebase import get_db
from app.utils.firebase import firestore_run

logger = logging.getLogger("market")
bearer_scheme = HTTPBearer(auto_error=False)


async def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> str:
    """Raw bearer token of the request. 401 when absent."""
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return credentials.credentials


async def get_current_user(token: str = Depends(get_bearer_token)) -> User:
    """
    Returns the currently authenticated user.
    Raises 401 if the token is invalid. Profile fields (phone, address) come
    from the ``users`` collection when a document exists.
    """
    db = get_db()
    try:
        decoded = auth.verify_id_token(token)
    except Exception as e:
        logger.warning(f"Token verification failed: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication token")

    uid = decoded.get("uid")
    if not uid:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user_doc = await firestore_run(db.collection("users").document(uid).get)
    profile = user_doc.to_dict() if user_doc.exists else {}

    return User(**{
        "_id": uid,
        "firebase_uid": uid,
        "display_name": profile.get("display_name") or decoded.get("name") or "",
        "email": profile.get("email") or decoded.get("email") or "",
        "email_verified": decoded.get("email_verified", False),
        "phone": profile.get("phone") or decoded.get("phone_number"),
        "role": profile.get("role", "customer"),
        "address": profile.get("address", ""),
        "city": profile.get("city", ""),
        "country": profile.get("country", "CM"),
    })
