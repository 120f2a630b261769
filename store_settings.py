"""Singleton store settings: shipping fee, free-shipping threshold and COD fee."""
import logging

from pymongo import ReturnDocument
from pymongo.database import Database

from database import utcnow
from schemas import Settings, SettingsUpdate

logger = logging.getLogger(__name__)

SETTINGS_ID = "store"


def get_settings(database: Database, session=None) -> Settings:
    """Read the settings document, creating it with defaults on first use."""
    doc = database["settings"].find_one_and_update(
        {"_id": SETTINGS_ID},
        {"$setOnInsert": {**Settings().model_dump(), "created_at": utcnow()}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    return Settings(**{k: v for k, v in doc.items() if k in Settings.model_fields})


def update_settings(database: Database, payload: SettingsUpdate) -> Settings:
    changes = payload.model_dump(exclude_none=True)
    get_settings(database)
    database["settings"].update_one({"_id": SETTINGS_ID}, {"$set": {**changes, "updated_at": utcnow()}})
    logger.info("Store settings updated: %s", ", ".join(sorted(changes)) or "no changes")
    return get_settings(database)
