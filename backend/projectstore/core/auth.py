# core/auth.py
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from firebase_admin import auth
from datetime import datetime, timezone
from typing import Optional
import logging

from projectstore.models.user_model import User
from projectstore.core.firebase import get_db

logger = logging.getLogger("projectstore")
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db=Depends(get_db),
) -> User:
    """
    Returns the currently authenticated user.
    Raises 401 if token is missing or invalid.
    Auto-creates user in Firestore if not exists.
    """
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")

    token = credentials.credentials
    try:
        decoded = auth.verify_id_token(token)
    except Exception as e:
        logger.warning(f"Token verification failed: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication token")

    uid = decoded.get("uid")
    if not uid:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user_doc = db.collection("users").document(uid).get()

    if not user_doc.exists:
        try:
            firebase_user = auth.get_user(uid)
            new_user = User(
                _id=uid,
                firebase_uid=uid,
                name=firebase_user.display_name or (firebase_user.email.split("@")[0] if firebase_user.email else ""),
                email=firebase_user.email or "",
                email_verified=firebase_user.email_verified,
                created_at=datetime.now(timezone.utc),
            )
            db.collection("users").document(uid).set(new_user.model_dump(by_alias=True))
            logger.info(f"✅ Created store user {uid}")
            return new_user
        except Exception as e:
            logger.error(f"❌ Failed to auto-create user {uid}: {e}")
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create user")

    return User(**{**user_doc.to_dict(), "_id": uid})
