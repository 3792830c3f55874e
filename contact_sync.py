"""
Contact cache refresh.

Automations resolve `contact_owner` from the local contact cache, so contacts
are re-read from HubSpot before runs are materialized whenever the cached row
is missing, has no owner, or is older than the freshness window.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Sequence

import requests

from database import TaskCacheDB
from hubspot_client import CONTACT_PROPERTIES, HubSpotClient
from working_hours import parse_timestamp, to_iso_z, utc_now

logger = logging.getLogger(__name__)

TIMESTAMP_PROPERTIES = ("createdate", "lastmodifieddate")


def flatten_contact(obj: Dict[str, Any]) -> Dict[str, Any]:
    """HubSpot contact object -> hs_contacts row"""
    props = obj.get("properties") or {}
    row = {"hs_object_id": str(obj["id"])}
    for name in CONTACT_PROPERTIES:
        value = props.get(name)
        if name in TIMESTAMP_PROPERTIES and value:
            value = to_iso_z(parse_timestamp(value))
        row[name] = value
    return row


class ContactSync:
    def __init__(self, db: TaskCacheDB, hub: HubSpotClient, max_age_minutes: int = 10):
        self.db = db
        self.hub = hub
        self.max_age_minutes = max_age_minutes

    def refresh(self, contact_ids: Sequence[str], force: bool = False) -> Dict[str, Any]:
        """
        Re-read stale (or, with force, all) contacts and upsert them.
        A HubSpot failure is logged and reported; callers proceed on cached data.
        """
        ids = sorted({str(c) for c in contact_ids if c})
        if not force:
            cutoff = to_iso_z(utc_now() - timedelta(minutes=self.max_age_minutes))
            ids = self.db.stale_contact_ids(ids, cutoff)

        result = {"requested": len(ids), "synced": 0, "errors": []}
        if not ids:
            return result

        try:
            contacts = self.hub.batch_read_contacts(ids)
        except requests.exceptions.RequestException as e:
            logger.error(f"Contact refresh failed for {len(ids)} contacts: {e}")
            result["errors"].append(str(e))
            return result

        rows: List[Dict[str, Any]] = [flatten_contact(c) for c in contacts if c.get("id")]
        result["synced"] = self.db.upsert_contacts(rows)
        missing = set(ids) - {r["hs_object_id"] for r in rows}
        if missing:
            logger.warning(f"HubSpot returned no data for contacts: {sorted(missing)}")
        logger.info(f"✓ Refreshed {result['synced']}/{len(ids)} contacts")
        return result
