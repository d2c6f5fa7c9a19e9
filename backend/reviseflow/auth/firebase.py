"""
Firebase Admin SDK initialization and ID-token verification.
Initialized once at application startup; callers arrive with a Firebase ID token.
"""
import json
import os
import logging
from typing import Optional
import firebase_admin
from firebase_admin import credentials, auth
from reviseflow.config import settings

logger = logging.getLogger(__name__)


# Global Firebase app instance
_firebase_app: Optional[firebase_admin.App] = None


def _load_credentials(raw: Optional[str]):
    """
    Credentials from a file path, an inline JSON string, or application defaults.

    Raises:
        ValueError: If raw is neither an existing file nor valid JSON
    """
    if not raw:
        return credentials.ApplicationDefault()

    if os.path.exists(raw):
        logger.info(f"Loaded Firebase credentials from file: {raw}")
        return credentials.Certificate(raw)

    try:
        cred_dict = json.loads(raw)
    except json.JSONDecodeError:
        raise ValueError("FIREBASE_CREDENTIALS_JSON must be a valid file path or JSON string")
    logger.info("Loaded Firebase credentials from JSON string")
    return credentials.Certificate(cred_dict)


def initialize_firebase() -> None:
    """
    Initialize Firebase Admin SDK.

    Raises:
        ValueError: If FIREBASE_PROJECT_ID is missing or credentials are malformed
    """
    global _firebase_app

    if _firebase_app is not None:
        return

    if not settings.firebase_project_id:
        raise ValueError("FIREBASE_PROJECT_ID must be set")

    _firebase_app = firebase_admin.initialize_app(
        _load_credentials(settings.firebase_credentials_json),
        {"projectId": settings.firebase_project_id}
    )


def verify_firebase_token(token: str) -> dict:
    """
    Verify Firebase ID token and return decoded token claims.

    Args:
        token: Firebase JWT ID token string

    Returns:
        Decoded token claims dict with uid, email, etc.

    Raises:
        ValueError: If token is invalid, expired, revoked, or Firebase is not initialized
    """
    if _firebase_app is None:
        raise ValueError("Authentication is not configured")

    try:
        # Checks signature, expiry, issuer and audience
        return auth.verify_id_token(token, app=_firebase_app)
    except ValueError:
        raise
    except Exception as e:
        raise ValueError(f"Token verification failed: {str(e)}")
