"""
Firebase Configuration Module

Lazily initializes the Firebase Admin SDK and hands out a Firestore client.

Environment (read from the process or a .env file):
    FIREBASE_CREDENTIALS     - path to a service-account JSON file
    FIREBASE_PROJECT_ID      - project id (required with the emulator)
    FIRESTORE_EMULATOR_HOST  - host:port of a local Firestore emulator

Functions:
    get_db: Return the Firestore client, or None if Firebase is not configured.
"""

import logging
import os

import firebase_admin
from dotenv import load_dotenv
from firebase_admin import credentials, firestore

load_dotenv()

logger = logging.getLogger(__name__)

_db = None


def _initialize_app() -> None:
    try:
        firebase_admin.get_app()
        return
    except ValueError:
        pass

    credentials_path = os.environ.get("FIREBASE_CREDENTIALS")
    project_id = os.environ.get("FIREBASE_PROJECT_ID")
    options = {"projectId": project_id} if project_id else None

    if credentials_path:
        firebase_admin.initialize_app(credentials.Certificate(credentials_path), options)
    else:
        # Emulator connections need no credentials, only a project id
        firebase_admin.initialize_app(options=options)


def get_db():
    """
    Get the Firestore client.

    Returns:
        google.cloud.firestore.Client | None: The client, or None when
            neither credentials nor an emulator host are configured.
    """
    global _db
    if _db is not None:
        return _db

    if not os.environ.get("FIREBASE_CREDENTIALS") and not os.environ.get("FIRESTORE_EMULATOR_HOST"):
        logger.warning("Firestore is not configured: set FIREBASE_CREDENTIALS or FIRESTORE_EMULATOR_HOST")
        return None

    _initialize_app()
    _db = firestore.client()
    logger.info("Connected to Firestore")
    return _db
