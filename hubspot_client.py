"""
HubSpot Integration Module
Handles the HubSpot API interactions needed by the task automations: task
search and batch create/update, contact batch reads, list memberships, calls
and owners. Uses requests only to avoid library dependency issues.
"""

import logging
import time
import requests
from typing import Any, Dict, Iterator, List, Optional, Sequence

logger = logging.getLogger(__name__)

BATCH_SIZE = 100

CONTACT_PROPERTIES = [
    "firstname", "lastname", "mobilephone", "ensol_source_group", "hs_lead_status",
    "lifecyclestage", "createdate", "lastmodifieddate", "hubspot_owner_id",
]

TASK_PROPERTIES = [
    "hs_task_subject", "hs_task_type", "hs_task_status", "hs_task_priority", "hs_timestamp",
    "hs_queue_membership_ids", "hubspot_owner_id", "hs_task_completion_count",
    "hs_task_completion_date", "hs_lastmodifieddate",
]

CALL_PROPERTIES = ["hs_call_direction", "hs_call_duration", "hubspot_owner_id"]

# HubSpot-defined association type: task -> contact
TASK_TO_CONTACT_ASSOCIATION_TYPE = 204


def chunked(items: Sequence[Any], size: int = BATCH_SIZE) -> Iterator[List[Any]]:
    items = list(items)
    for i in range(0, len(items), size):
        yield items[i:i + size]


class HubSpotClient:
    """HubSpot API client with retry, backoff and throttling"""

    def __init__(self, token: str, base_url: str = "https://api.hubapi.com",
                 throttle_seconds: float = 0.15, max_retries: int = 10):
        """
        Args:
            token: Private app access token (Bearer)
            throttle_seconds: Delay before each request. HubSpot allows ~100
                requests per 10 seconds; 150ms keeps us safely under that.
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.throttle_seconds = throttle_seconds
        self.max_retries = max_retries
        self.api_calls = 0
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

    def _request_with_retry(self, method: str, path: str, **kwargs) -> requests.Response:
        """Make request with exponential backoff retry and throttling"""
        backoff_factor = 1.5

        if self.throttle_seconds:
            time.sleep(self.throttle_seconds)

        for attempt in range(self.max_retries):
            try:
                self.api_calls += 1
                response = self.session.request(method, f"{self.base_url}{path}",
                                                timeout=60, **kwargs)

                if response.status_code == 429:
                    retry_after = response.headers.get('Retry-After')
                    if retry_after:
                        wait_time = float(retry_after)
                    else:
                        wait_time = min(backoff_factor ** attempt, 30)
                    logger.warning(f"Rate limited. Waiting {wait_time:.1f} seconds (attempt {attempt + 1}/{self.max_retries})...")
                    time.sleep(wait_time)
                    continue

                if response.status_code >= 400:
                    logger.error(f"HubSpot error {response.status_code} on {method} {path}: {response.text}")

                    # 4xx won't change on retry
                    if response.status_code < 500:
                        response.raise_for_status()

                    if attempt < self.max_retries - 1:
                        time.sleep(min(backoff_factor ** attempt, 15))
                        continue
                    response.raise_for_status()

                return response

            except requests.exceptions.HTTPError:
                raise
            except requests.exceptions.RequestException as e:
                # Only retry on network/connection errors
                logger.error(f"Request failed (attempt {attempt + 1}): {e}")
                if attempt == self.max_retries - 1:
                    raise
                time.sleep(min(backoff_factor ** attempt, 15))

        raise requests.exceptions.RetryError(f"Max retries exceeded for {method} {path}")

    # ==================== GENERIC CRM OBJECTS ====================

    def search_objects(self, object_type: str, filter_groups: List[Dict[str, Any]],
                       properties: List[str], sorts: Optional[List[Any]] = None,
                       after: Optional[str] = None, limit: int = 100) -> Dict[str, Any]:
        body = {
            "filterGroups": filter_groups,
            "properties": properties,
            "sorts": sorts or [],
            "limit": limit,
        }
        if after is not None:
            body["after"] = after

        response = self._request_with_retry("POST", f"/crm/v3/objects/{object_type}/search", json=body)
        return response.json()

    def get_object(self, object_type: str, object_id: str, properties: List[str],
                   associations: Optional[List[str]] = None) -> Dict[str, Any]:
        params = {"properties": ",".join(properties)}
        if associations:
            params["associations"] = ",".join(associations)
        response = self._request_with_retry("GET", f"/crm/v3/objects/{object_type}/{object_id}",
                                            params=params)
        return response.json()

    def batch_create(self, object_type: str, inputs: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Create up to BATCH_SIZE objects. HubSpot answers 201, or 207 on partial
        success with per-item `results` and `errors`.
        """
        response = self._request_with_retry("POST", f"/crm/v3/objects/{object_type}/batch/create",
                                            json={"inputs": inputs})
        data = response.json()
        return {"results": data.get("results", []), "errors": data.get("errors", [])}

    def batch_update(self, object_type: str, inputs: List[Dict[str, Any]]) -> Dict[str, Any]:
        response = self._request_with_retry("POST", f"/crm/v3/objects/{object_type}/batch/update",
                                            json={"inputs": inputs})
        data = response.json()
        return {"results": data.get("results", []), "errors": data.get("errors", [])}

    def batch_read(self, object_type: str, object_ids: Sequence[str],
                   properties: List[str]) -> List[Dict[str, Any]]:
        results = []
        for chunk in chunked(object_ids):
            response = self._request_with_retry(
                "POST", f"/crm/v3/objects/{object_type}/batch/read",
                json={"inputs": [{"id": str(i)} for i in chunk], "properties": properties},
            )
            results.extend(response.json().get("results", []))
        return results

    def batch_read_associations(self, from_type: str, to_type: str,
                                object_ids: Sequence[str]) -> Dict[str, List[str]]:
        """Map of object id -> associated object ids (v4 associations API)"""
        associations = {}
        for chunk in chunked(object_ids):
            response = self._request_with_retry(
                "POST", f"/crm/v4/associations/{from_type}/{to_type}/batch/read",
                json={"inputs": [{"id": str(i)} for i in chunk]},
            )
            for result in response.json().get("results", []):
                from_id = str(result.get("from", {}).get("id"))
                associations[from_id] = [str(t.get("toObjectId")) for t in result.get("to", [])]
        return associations

    # ==================== TASKS / CONTACTS / CALLS ====================

    def batch_create_tasks(self, inputs: List[Dict[str, Any]]) -> Dict[str, Any]:
        return self.batch_create("tasks", inputs)

    def batch_complete_tasks(self, task_ids: Sequence[str]) -> Dict[str, Any]:
        inputs = [{"id": str(t), "properties": {"hs_task_status": "COMPLETED"}} for t in task_ids]
        return self.batch_update("tasks", inputs)

    def batch_read_contacts(self, contact_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return self.batch_read("contacts", contact_ids, CONTACT_PROPERTIES)

    def search_tasks_modified_since(self, since_ms: int, after: Optional[str] = None,
                                    limit: int = 100) -> Dict[str, Any]:
        """Tasks whose last modification (or completion) is after `since_ms`"""
        filter_groups = [
            {"filters": [{"propertyName": "hs_lastmodifieddate", "operator": "GTE", "value": str(since_ms)}]},
            {"filters": [{"propertyName": "hs_task_completion_date", "operator": "GTE", "value": str(since_ms)}]},
        ]
        sorts = [{"propertyName": "hs_lastmodifieddate", "direction": "ASCENDING"}]
        return self.search_objects("tasks", filter_groups, TASK_PROPERTIES, sorts, after=after, limit=limit)

    def get_call(self, call_id: str) -> Dict[str, Any]:
        return self.get_object("calls", call_id, CALL_PROPERTIES, associations=["contacts"])

    # ==================== LISTS / OWNERS ====================

    def iter_list_memberships(self, list_id: str, page_size: int = 250) -> Iterator[Dict[str, Any]]:
        """Yield {recordId, membershipTimestamp} for every member of a list"""
        after = None
        while True:
            params = {"limit": page_size}
            if after:
                params["after"] = after
            response = self._request_with_retry("GET", f"/crm/v3/lists/{list_id}/memberships", params=params)
            data = response.json()
            for record in data.get("results", []):
                yield record
            after = data.get("paging", {}).get("next", {}).get("after")
            if not after:
                break

    def iter_owners(self, page_size: int = 100) -> Iterator[Dict[str, Any]]:
        after = None
        while True:
            params = {"limit": page_size, "archived": "false"}
            if after:
                params["after"] = after
            response = self._request_with_retry("GET", "/crm/v3/owners", params=params)
            data = response.json()
            for owner in data.get("results", []):
                yield owner
            after = data.get("paging", {}).get("next", {}).get("after")
            if not after:
                break

    # ==================== UTILITY ====================

    def test_connection(self) -> bool:
        """Test connection by fetching a single owner"""
        try:
            self._request_with_retry("GET", "/crm/v3/owners", params={"limit": 1})
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"HubSpot connection test failed: {e}")
            return False
