import json
import base64
import logging
from functools import lru_cache

from firebase_admin import credentials, initialize_app, get_app, firestore
from projectstore.core.config import settings

logger = logging.getLogger("projectstore")


def init_firebase():
    try:
        get_app()
        logger.info("✅ Firebase Admin SDK already initialized")
        return
    except ValueError:
        pass

    if settings.STORE_FIREBASE_KEY:
        try:
            decoded_json = base64.b64decode(settings.STORE_FIREBASE_KEY).decode("utf-8")
            service_account_info = json.loads(decoded_json)
            logger.info("🔑 Loaded Firebase credentials from STORE_FIREBASE_KEY")
        except Exception as e:
            raise RuntimeError(f"Failed to decode or parse STORE_FIREBASE_KEY: {e}")

        if not service_account_info.get("project_id"):
            raise ValueError("'project_id' missing in Firebase service account JSON")
        cred = credentials.Certificate(service_account_info)
    elif settings.GOOGLE_APPLICATION_CREDENTIALS:
        cred = credentials.Certificate(settings.GOOGLE_APPLICATION_CREDENTIALS)
    else:
        raise RuntimeError("STORE_FIREBASE_KEY or GOOGLE_APPLICATION_CREDENTIALS must be set")

    initialize_app(cred)
    logger.info("🔥 Firebase Admin SDK initialized successfully")


@lru_cache(maxsize=1)
def get_db():
    """Firestore client, created on first use. FastAPI dependency."""
    init_firebase()
    try:
        db = firestore.client()
        logger.info("✅ Firestore client ready")
        return db
    except Exception as e:
        logger.error(f"❌ Failed to initialize Firestore client: {e}")
        raise
