"""Firebase Admin SDK initialisation for the Firestore and RTDB token stores."""
from __future__ import annotations

import logging

import firebase_admin
from firebase_admin import credentials

from app.core.config import Settings

logger = logging.getLogger(__name__)


def get_firebase_app(settings: Settings) -> firebase_admin.App:
    """Return the default Firebase app, initialising it on first use."""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    options: dict[str, str] = {}
    if settings.firebase_database_url:
        options["databaseURL"] = settings.firebase_database_url

    certificate = credentials.Certificate(settings.firebase_credentials)
    logger.info(
        "Initialising Firebase app",
        extra={"project_id": settings.firebase_project_id, "has_database_url": bool(options)},
    )
    return firebase_admin.initialize_app(certificate, options)
