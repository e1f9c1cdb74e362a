"""
Firebase Admin SDK setup.
The API trusts Firebase ID tokens; users are created on first sight.
"""
import json
import logging
import os
from typing import Optional

import firebase_admin
from firebase_admin import auth, credentials

from app.config import settings

logger = logging.getLogger(__name__)

_firebase_app: Optional[firebase_admin.App] = None


def _load_credentials():
    """
    FIREBASE_CREDENTIALS_JSON may be a file path or an inline JSON document.
    Without it, application default credentials are used (gcloud / workload identity).
    """
    raw = settings.firebase_credentials_json
    if not raw:
        return credentials.ApplicationDefault()

    if os.path.exists(raw):
        logger.info(f"Loading Firebase credentials from file: {raw}")
        return credentials.Certificate(raw)

    try:
        return credentials.Certificate(json.loads(raw))
    except json.JSONDecodeError as e:
        raise ValueError("FIREBASE_CREDENTIALS_JSON must be a valid file path or JSON string") from e


def initialize_firebase() -> None:
    """Initialize the Firebase Admin SDK once per process."""
    global _firebase_app

    if _firebase_app is not None:
        return
    if not settings.firebase_project_id:
        raise ValueError("FIREBASE_PROJECT_ID must be set")

    _firebase_app = firebase_admin.initialize_app(
        _load_credentials(),
        {"projectId": settings.firebase_project_id}
    )
    logger.info("Firebase Admin SDK initialized", extra={"event": "firebase_initialized"})


def verify_firebase_token(token: str) -> dict:
    """
    Verify a Firebase ID token and return its claims.

    Raises:
        ValueError: If the token is invalid, expired or revoked
        RuntimeError: If the SDK was never initialized
    """
    if _firebase_app is None:
        raise RuntimeError("Firebase Admin SDK not initialized. Call initialize_firebase() first.")

    try:
        return auth.verify_id_token(token, app=_firebase_app)
    except ValueError:
        raise
    except Exception as e:
        # firebase_admin raises its own exception types for expired/revoked tokens
        raise ValueError(f"Token verification failed: {e}") from e


def has_admin_claim(decoded_token: dict) -> bool:
    """Admins carry a custom claim set from the Firebase console / Admin SDK."""
    return bool(decoded_token.get("admin")) or decoded_token.get("role") == "admin"
