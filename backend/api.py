"""
FastAPI backend for the DevOps Gantt dashboard.

Serves the flattened work item tree of a project to the Gantt frontend,
the location/project pickers, and task edits written back to Azure DevOps.
Supports CORS for local development and production deployment.
"""

import logging
import sys
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from backend.config import load_config
from devops_gantt.core.aggregator import Aggregator, phase_title_matcher
from devops_gantt.core.devops import (
    DevOpsClient,
    DevOpsError,
    build_patch_operations,
    wiql_literal,
)
from devops_gantt.core.store import (
    FIELD_COMPLETED_WORK,
    FIELD_ID,
    FIELD_ORIGINAL_ESTIMATE,
    FIELD_STATE,
    FIELD_TITLE,
    FIELD_TYPE,
    TYPE_LOCATION,
    TYPE_PROJECT,
)

logger = logging.getLogger(__name__)

config = load_config()
if not config.pat:
    logger.warning("ADO_PAT is not set; Azure DevOps requests will fail")

# Initialize FastAPI app
app = FastAPI(
    title="DevOps Gantt API",
    description="Backend API for the Azure DevOps Gantt dashboard",
    version="1.0.0",
)

# Configure CORS - allow all localhost origins in development
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"http://(localhost|127\.0\.0\.1):\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_client: Optional[DevOpsClient] = None


def get_client() -> DevOpsClient:
    """Shared Azure DevOps client (created on first use)."""
    global _client
    if not config.pat:
        raise HTTPException(status_code=500, detail="ADO_PAT is not configured")
    if _client is None:
        _client = DevOpsClient(organization=config.organization, pat=config.pat)
    return _client


def get_aggregator(client: DevOpsClient = Depends(get_client)) -> Aggregator:
    """Per-request aggregator wired from configuration."""
    return Aggregator(
        client,
        is_phase=phase_title_matcher(config.phase_pattern),
        target_types=config.target_types,
        history_concurrency=config.history_concurrency,
        history_timeout=config.history_timeout_seconds,
        log=logging.getLogger("devops_gantt.pipeline"),
    )


@app.on_event("shutdown")
async def shutdown_event() -> None:
    """Close the shared HTTP client."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


@app.get("/")  # type: ignore[misc]
async def root() -> Dict[str, Any]:
    """
    Root endpoint with API information.

    Returns
    -------
    dict
        API information and status
    """
    return {
        "name": "DevOps Gantt API",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "/api/gantt/{root_id}": "Flattened work item tree for a project",
            "/api/locations": "Open locations of a team project",
            "/api/projects": "Projects below a location",
            "/api/task/{task_id}": "Update a single work item (PATCH)",
            "/health": "Health check",
        },
        "default_root_id": config.root_id,
    }


@app.get("/health")  # type: ignore[misc]
async def health() -> Dict[str, str]:
    """
    Health check endpoint.

    Returns
    -------
    dict
        Health status
    """
    return {"status": "healthy"}


@app.get("/api/gantt/{root_id}")  # type: ignore[misc]
async def get_gantt(
    root_id: int, aggregator: Aggregator = Depends(get_aggregator)
) -> List[Dict[str, Any]]:
    """
    Get the flattened, depth-ordered work item tree below a project root.

    Parameters
    ----------
    root_id : int
        Work item id of the project root

    Returns
    -------
    list
        Gantt rows in depth-first order, each with its depth
    """
    try:
        rows = await aggregator.build_rows(root_id)
        return [row.to_dict() for row in rows]
    except Exception as e:
        logger.error(f"Error building Gantt rows for {root_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=500, detail=f"Azure DevOps fetch failed: {str(e)}"
        )


@app.get("/api/locations")  # type: ignore[misc]
async def get_locations(
    team: Optional[str] = Query(None, description="Team project (default: configured project)"),
    client: DevOpsClient = Depends(get_client),
) -> List[Dict[str, str]]:
    """
    List open Location work items of a team project.

    Returns
    -------
    list
        ``{"id", "title"}`` per location
    """
    team = team or config.project
    logger.info(f"Loading locations for team {team}")
    try:
        result = await client.run_wiql(
            "SELECT [System.Id], [System.Title] FROM WorkItems "
            f"WHERE [System.WorkItemType] = {wiql_literal(TYPE_LOCATION)} "
            f"AND [System.TeamProject] = {wiql_literal(team)} "
            "AND [System.State] <> 'Closed'"
        )
        ids = [w["id"] for w in result.get("workItems") or []]
        if not ids:
            return []
        batch = await client.read_work_items(ids, [FIELD_ID, FIELD_TITLE])
        return [
            {"id": str(w["id"]), "title": (w.get("fields") or {}).get(FIELD_TITLE, "")}
            for w in batch
        ]
    except DevOpsError as e:
        logger.error(f"Error loading locations: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="location list failed")


@app.get("/api/projects")  # type: ignore[misc]
async def get_projects(
    location: Optional[str] = Query(None, description="Location title"),
    team: Optional[str] = Query(None, description="Team project"),
    client: DevOpsClient = Depends(get_client),
) -> List[Dict[str, Any]]:
    """
    List Project work items below a location.

    Returns
    -------
    list
        ``{"id", "title", "state", "est", "done"}`` per project
    """
    if not location or not team:
        raise HTTPException(status_code=400, detail="Missing location or team")
    logger.info(f"Loading projects for team {team}, location {location}")

    try:
        links = await client.run_wiql(
            "SELECT [System.Id] FROM WorkItemLinks WHERE "
            f"[Source].[System.WorkItemType] = {wiql_literal(TYPE_LOCATION)} "
            f"AND [Source].[System.Title] = {wiql_literal(location)} "
            "AND [System.Links.LinkType] = 'System.LinkTypes.Hierarchy-Forward' "
            "MODE (Recursive)"
        )
        ids = [
            r["target"]["id"]
            for r in links.get("workItemRelations") or []
            if (r.get("target") or {}).get("id")
        ]
        if not ids:
            return []

        records = await client.read_work_items(
            ids,
            [
                FIELD_ID,
                FIELD_TITLE,
                FIELD_STATE,
                FIELD_TYPE,
                FIELD_ORIGINAL_ESTIMATE,
                FIELD_COMPLETED_WORK,
            ],
        )
    except DevOpsError as e:
        logger.error(f"Error loading projects: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="project list failed")

    projects = []
    for w in records:
        f = w.get("fields") or {}
        if f.get(FIELD_TYPE) != TYPE_PROJECT:
            continue
        projects.append({
            "id": str(w["id"]),
            "title": f.get(FIELD_TITLE, ""),
            "state": f.get(FIELD_STATE),
            "est": f.get(FIELD_ORIGINAL_ESTIMATE) or 0,
            "done": f.get(FIELD_COMPLETED_WORK) or 0,
        })

    logger.info(f"Returning {len(projects)} projects")
    return projects


@app.patch("/api/task/{task_id}")  # type: ignore[misc]
async def update_task(
    task_id: int,
    body: Any = Body(None),
    client: DevOpsClient = Depends(get_client),
) -> Dict[str, Any]:
    """
    Update a single work item.

    The body is either a JSON-Patch operation list or an edit object with
    ``name``, ``dueDate``, ``duration``, ``assignedTo``, ``parent`` and
    ``billable``. An edit without changes succeeds without calling Azure
    DevOps. A malformed ``dueDate`` is rejected with 400.
    """
    try:
        ops = build_patch_operations(body)
    except ValueError as e:
        logger.warning(f"Rejected edit for work item {task_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    logger.info(f"PATCH work item {task_id}: {len(ops)} operations")

    if not ops:
        logger.info(f"No changes for work item {task_id}")
        return {"ok": True}

    try:
        updated_id = await client.patch_work_item(task_id, ops)
    except DevOpsError as e:
        logger.error(f"Update of work item {task_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="update failed")

    return {"ok": True, "id": updated_id}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    if not config.pat:
        logger.error("ADO_PAT missing - set it in the environment or config.json")
        sys.exit(1)

    logger.info(f"Starting DevOps Gantt API on http://0.0.0.0:{config.port}")
    uvicorn.run(app, host="0.0.0.0", port=config.port, log_level="info")  # nosec B104
