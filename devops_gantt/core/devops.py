"""
Azure DevOps REST client for the Gantt backend.

All outbound calls to the work item store go through ``DevOpsClient``:
WIQL queries, batch reads, revision history and single-item patches.

Testability: pass an ``httpx.MockTransport`` as ``transport`` to intercept
HTTP calls without making real network requests.
"""

import logging
from datetime import timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx

from devops_gantt.core.aggregator import HOURS_PER_ESTIMATE_UNIT
from devops_gantt.core.store import (
    FIELD_ASSIGNED_TO,
    FIELD_BILLABLE,
    FIELD_DUE_DATE,
    FIELD_FINISH_DATE,
    FIELD_ORIGINAL_ESTIMATE,
    FIELD_PARENT,
    FIELD_START_DATE,
    FIELD_TITLE,
    LinkEdge,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

API_VERSION = "7.0"
BATCH_SIZE = 200
UPDATES_PAGE_SIZE = 200
DEFAULT_TIMEOUT = 30.0


class DevOpsError(Exception):
    """Raised when Azure DevOps cannot be reached or rejects a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def wiql_literal(value: str) -> str:
    """Quote a value for use as a WIQL string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def hierarchy_query(root_id: int, target_types: Sequence[str]) -> str:
    """Recursive forward-hierarchy link query below ``root_id``."""
    types = ",".join(wiql_literal(t) for t in target_types)
    return (
        "SELECT [System.Id] FROM WorkItemLinks WHERE "
        f"[Source].[System.Id] = {int(root_id)} "
        "AND [System.Links.LinkType] = 'System.LinkTypes.Hierarchy-Forward' "
        f"AND [Target].[System.WorkItemType] IN ({types}) "
        "MODE (Recursive)"
    )


def build_patch_operations(body: Any) -> List[Dict[str, Any]]:
    """
    Translate a task edit into JSON-Patch operations.

    A list body is already a JSON-Patch document and passes through. A
    mapping may carry ``name``, ``dueDate``, ``duration``, ``assignedTo``,
    ``parent`` and ``billable``; the due date is written to both DueDate
    and FinishDate, and a duration together with a due date also writes
    the synthesized StartDate. Dates are written in UTC.

    Returns
    -------
    List[dict]
        Operations to send; empty when nothing changes

    Raises
    ------
    ValueError
        If ``dueDate`` is present but not a valid timestamp
    """
    if isinstance(body, list):
        return body
    if not isinstance(body, dict):
        return []
    ops: List[Dict[str, Any]] = []

    def add(field: str, value: Any) -> None:
        ops.append({"op": "add", "path": f"/fields/{field}", "value": value})

    if body.get("name"):
        add(FIELD_TITLE, body["name"])

    due = None
    if body.get("dueDate"):
        due = parse_timestamp(body["dueDate"])
        if due is None:
            raise ValueError(f"invalid dueDate: {body['dueDate']!r}")
        due = due.astimezone(timezone.utc)
    due_iso = due.isoformat().replace("+00:00", "Z") if due else None
    if due_iso:
        add(FIELD_DUE_DATE, due_iso)
        add(FIELD_FINISH_DATE, due_iso)

    duration = body.get("duration")
    if isinstance(duration, (int, float)) and not isinstance(duration, bool):
        add(FIELD_ORIGINAL_ESTIMATE, duration)
        if due:
            start = due - timedelta(hours=duration * HOURS_PER_ESTIMATE_UNIT)
            add(FIELD_START_DATE, start.isoformat().replace("+00:00", "Z"))

    if body.get("assignedTo"):
        add(FIELD_ASSIGNED_TO, body["assignedTo"])

    if body.get("parent"):
        add(FIELD_PARENT, int(body["parent"]))

    if body.get("billable") is not None:
        add(FIELD_BILLABLE, body["billable"])

    return ops


class DevOpsClient:
    """
    Azure DevOps work item tracking client.

    Authenticates with a personal access token (basic auth, empty user).
    The underlying ``httpx.AsyncClient`` is created lazily on first use.
    """

    def __init__(
        self,
        organization: str,
        pat: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.organization = organization
        self.base_url = f"https://dev.azure.com/{organization}/_apis/"
        self._pat = pat
        self._timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    @property
    def http(self) -> httpx.AsyncClient:
        """Return (or lazily create) the httpx.AsyncClient."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                auth=("", self._pat),
                headers={"Content-Type": "application/json"},
                params={"api-version": API_VERSION},
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self.http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {url} failed: {e}")
            raise DevOpsError(f"{method} {url} failed: {e}") from e

        if response.status_code >= 400:
            detail = response.text[:500]
            logger.error(f"{method} {url} returned {response.status_code}: {detail}")
            raise DevOpsError(
                f"{method} {url} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise DevOpsError(
                f"{method} {url} returned invalid JSON", status_code=response.status_code
            ) from e

    async def run_wiql(self, query: str) -> Dict[str, Any]:
        """Run a WIQL query and return the raw result."""
        logger.debug(f"WIQL: {query}")
        data = await self._request("POST", "wit/wiql", json={"query": query})
        count = len(data.get("workItems") or data.get("workItemRelations") or [])
        logger.info(f"WIQL returned {count} entries")
        return data

    async def query_hierarchy(
        self, root_id: int, target_types: Sequence[str]
    ) -> List[LinkEdge]:
        """Hierarchy edges reachable from ``root_id`` through the allowed types."""
        data = await self.run_wiql(hierarchy_query(root_id, target_types))
        return [
            LinkEdge.from_relation(relation)
            for relation in data.get("workItemRelations") or []
        ]

    async def read_work_items(
        self, ids: Sequence[int], fields: Iterable[str]
    ) -> List[Dict[str, Any]]:
        """Batch-read work items, at most ``BATCH_SIZE`` ids per call."""
        fields = list(fields)
        records: List[Dict[str, Any]] = []
        for offset in range(0, len(ids), BATCH_SIZE):
            chunk = list(ids[offset:offset + BATCH_SIZE])
            logger.debug(f"Reading batch {offset // BATCH_SIZE + 1}: {len(chunk)} ids")
            data = await self._request(
                "POST", "wit/workitemsbatch", json={"ids": chunk, "fields": fields}
            )
            records.extend(data.get("value") or [])
        logger.info(f"Read {len(records)} work items")
        return records

    async def read_updates(self, work_item_id: int) -> List[Dict[str, Any]]:
        """All revision updates of one work item, oldest first."""
        updates: List[Dict[str, Any]] = []
        skip = 0
        while True:
            data = await self._request(
                "GET",
                f"wit/workitems/{int(work_item_id)}/updates",
                params={"$top": UPDATES_PAGE_SIZE, "$skip": skip},
            )
            page = data.get("value") or []
            updates.extend(page)
            if len(page) < UPDATES_PAGE_SIZE:
                return updates
            skip += len(page)

    async def patch_work_item(
        self, work_item_id: int, operations: List[Dict[str, Any]]
    ) -> int:
        """Apply JSON-Patch operations to one work item and return its id."""
        data = await self._request(
            "PATCH",
            f"wit/workitems/{int(work_item_id)}",
            json=operations,
            headers={"Content-Type": "application/json-patch+json"},
        )
        return data.get("id", work_item_id)
