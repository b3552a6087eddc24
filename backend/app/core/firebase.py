import json
import base64
import logging
from firebase_admin import credentials, initialize_app, get_app, firestore
from app.core.config import settings

logger = logging.getLogger("market")

_db = None


def init_firebase():
    try:
        get_app()
        logger.info("Firebase Admin SDK already initialized")
        return
    except ValueError:
        pass

    if not settings.MARKET_FIREBASE_KEY:
        raise RuntimeError("MARKET_FIREBASE_KEY environment variable is not set")

    try:
        decoded_json = base64.b64decode(settings.MARKET_FIREBASE_KEY).decode("utf-8")
        service_account_info = json.loads(decoded_json)
        logger.info("Loaded Firebase credentials from MARKET_FIREBASE_KEY")
    except Exception as e:
        raise RuntimeError(f"Failed to decode or parse MARKET_FIREBASE_KEY: {e}")

    project_id = service_account_info.get("project_id")
    if not project_id:
        raise ValueError("'project_id' missing in Firebase service account JSON")

    cred = credentials.Certificate(service_account_info)
    initialize_app(cred)

    logger.info(f"Firebase Admin SDK initialized | Project: {project_id}")


def get_db():
    """Firestore client, initialized on first use."""
    global _db
    if _db is None:
        init_firebase()
        try:
            _db = firestore.client()
            logger.info("Firestore client ready")
        except Exception as e:
            logger.error(f"Failed to initialize Firestore client: {e}")
            raise
    return _db


__all__ = ["init_firebase", "get_db"]
