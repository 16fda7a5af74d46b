"""Shared fixtures and fakes for the Gantt pipeline tests."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from devops_gantt.core.devops import DevOpsError
from devops_gantt.core.store import LinkEdge

NOW = datetime(2024, 3, 20, 12, 0, tzinfo=timezone.utc)


def record(work_item_id: int, title: str, wi_type: str = "Task", **fields: Any) -> Dict[str, Any]:
    """Build a workitemsbatch record the way Azure DevOps returns it."""
    names = {
        "state": "System.State",
        "assigned_to": "System.AssignedTo",
        "estimate": "Microsoft.VSTS.Scheduling.OriginalEstimate",
        "completed": "Microsoft.VSTS.Scheduling.CompletedWork",
        "due": "Microsoft.VSTS.Scheduling.DueDate",
        "finish": "Microsoft.VSTS.Scheduling.FinishDate",
        "billable": "Custom.Billable",
    }
    data = {
        "System.Id": work_item_id,
        "System.Title": title,
        "System.WorkItemType": wi_type,
    }
    for key, value in fields.items():
        data[names[key]] = value
    return {"id": work_item_id, "fields": data}


def relation(source: Optional[int], target: Optional[int]) -> Dict[str, Any]:
    """Build a workItemRelations entry."""
    return {
        "rel": None if source is None else "System.LinkTypes.Hierarchy-Forward",
        "source": None if source is None else {"id": source},
        "target": None if target is None else {"id": target},
    }


class FakeDevOps:
    """In-memory stand-in for DevOpsClient."""

    def __init__(
        self,
        relations: List[Dict[str, Any]],
        records: List[Dict[str, Any]],
        updates: Optional[Dict[int, List[Dict[str, Any]]]] = None,
        failing: tuple = (),
    ):
        self.relations = relations
        self.records = records
        self.updates = updates or {}
        self.failing = set(failing)
        self.history_reads: List[int] = []
        self.patches: List[tuple] = []
        self.wiql: List[str] = []
        self.wiql_result: Dict[str, Any] = {}

    async def run_wiql(self, query: str) -> Dict[str, Any]:
        self.wiql.append(query)
        return self.wiql_result

    async def query_hierarchy(self, root_id, target_types) -> List[LinkEdge]:
        return [LinkEdge.from_relation(r) for r in self.relations]

    async def read_work_items(self, ids, fields) -> List[Dict[str, Any]]:
        wanted = set(ids)
        return [r for r in self.records if r["id"] in wanted]

    async def read_updates(self, work_item_id: int) -> List[Dict[str, Any]]:
        self.history_reads.append(work_item_id)
        if work_item_id in self.failing:
            raise DevOpsError(f"history for {work_item_id} unavailable", status_code=503)
        return self.updates.get(work_item_id, [])

    async def patch_work_item(self, work_item_id, operations) -> int:
        self.patches.append((work_item_id, operations))
        return work_item_id


def completed_work_update(revised_date: str, new_value=None, old_value=None) -> Dict[str, Any]:
    """One updates-endpoint entry changing CompletedWork."""
    change = {}
    if old_value is not None:
        change["oldValue"] = old_value
    if new_value is not None:
        change["newValue"] = new_value
    return {
        "revisedDate": revised_date,
        "fields": {"Microsoft.VSTS.Scheduling.CompletedWork": change},
    }


@pytest.fixture
def now():
    """Fixed evaluation time for every test."""
    return NOW


@pytest.fixture
def project_tree():
    """
    Project root with one phase, one demand and tasks.

    Hierarchy::

        100 Project "Website relaunch"
          110 "P1. Design"         (phase)
            111 Task "Wireframes"
            112 Task "Visual design"
          120 ITDemand "Hosting"
            121 Task "Provision servers"
    """
    relations = [
        relation(None, 100),
        relation(100, 110),
        relation(110, 111),
        relation(110, 112),
        relation(100, 120),
        relation(120, 121),
    ]
    records = [
        record(100, "Website relaunch", "Project", state="Active"),
        record(110, "P1. Design", "Project", state="Active"),
        record(
            111, "Wireframes", estimate=8, completed=4,
            finish="2024-02-01T00:00:00Z", billable=True,
        ),
        record(
            112, "Visual design", estimate=16, completed=10,
            due="2024-02-10T00:00:00Z", billable="no",
        ),
        record(120, "Hosting", "ITDemand", state="New"),
        record(
            121, "Provision servers", estimate=4, completed=40,
            assigned_to={"displayName": "Dana Ops"},
        ),
    ]
    return relations, records
