"""
Per-request Data Models for the DevOps Gantt view.

This module defines the records that flow through the Gantt pipeline: raw
work items and hierarchy edges read from Azure DevOps, and the annotated
rows handed to the dashboard.

Key principles:
- ALL timestamps must be timezone-aware (UTC)
- Records live for one request only (nothing is persisted locally)
- Azure DevOps remains the single source of truth
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Azure DevOps field reference names read by the pipeline
FIELD_ID = "System.Id"
FIELD_TITLE = "System.Title"
FIELD_TYPE = "System.WorkItemType"
FIELD_STATE = "System.State"
FIELD_PARENT = "System.Parent"
FIELD_ASSIGNED_TO = "System.AssignedTo"
FIELD_ORIGINAL_ESTIMATE = "Microsoft.VSTS.Scheduling.OriginalEstimate"
FIELD_COMPLETED_WORK = "Microsoft.VSTS.Scheduling.CompletedWork"
FIELD_START_DATE = "Microsoft.VSTS.Scheduling.StartDate"
FIELD_DUE_DATE = "Microsoft.VSTS.Scheduling.DueDate"
FIELD_FINISH_DATE = "Microsoft.VSTS.Scheduling.FinishDate"
FIELD_BILLABLE = "Custom.Billable"

GANTT_FIELDS: List[str] = [
    FIELD_ID,
    FIELD_TITLE,
    FIELD_TYPE,
    FIELD_STATE,
    FIELD_PARENT,
    FIELD_ASSIGNED_TO,
    FIELD_ORIGINAL_ESTIMATE,
    FIELD_COMPLETED_WORK,
    FIELD_DUE_DATE,
    FIELD_FINISH_DATE,
    FIELD_BILLABLE,
]

# Work item types
TYPE_PROJECT = "Project"
TYPE_DEMAND = "ITDemand"
TYPE_TASK = "Task"
TYPE_LOCATION = "Location"

# Seconds fraction of any length; fromisoformat before 3.11 takes only 3 or 6 digits
_FRACTION = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an Azure DevOps timestamp to a timezone-aware datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        try:
            text = _FRACTION.sub(
                lambda m: f"{m.group(1)}.{(m.group(2) + '000000')[:6]}",
                str(value).replace("Z", "+00:00"),
            )
            ts = datetime.fromisoformat(text)
        except ValueError:
            return None
    if ts.tzinfo is None:
        # Naive timestamps are treated as UTC
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def parse_billable(raw: Any) -> Optional[bool]:
    """
    Normalize the tri-state billable field.

    Strings count as billable only for "yes" / "true" (any case); anything
    else is coerced with ``bool``. ``None`` stays unknown.
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw.lower() in ("yes", "true")
    return bool(raw)


def display_name(raw: Any) -> str:
    """Identity fields arrive as objects with a displayName or as plain strings."""
    if isinstance(raw, dict):
        return raw.get("displayName") or ""
    return raw or ""


def _hours(raw: Any) -> float:
    if raw is None:
        return 0.0
    try:
        return float(raw)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class LinkEdge:
    """
    Directed hierarchy edge (parent -> child) from a recursive link query.

    Either endpoint may be missing; the first relation of a recursive
    query only carries the root as its target.
    """

    source: Optional[int] = None
    target: Optional[int] = None

    @classmethod
    def from_relation(cls, relation: Dict[str, Any]) -> "LinkEdge":
        source = relation.get("source") or {}
        target = relation.get("target") or {}
        return cls(source=source.get("id"), target=target.get("id"))


@dataclass
class WorkItem:
    """
    Work item as read from the batch endpoint.

    Parameters
    ----------
    id : int
        Unique work item identifier
    title : str
        Work item title
    type : str
        Work item type (Project, ITDemand, Task, ...)
    state : str
        Workflow state
    parent_id : Optional[int]
        Parent identifier, resolved from the link table (not from System.Parent)
    assigned_to : str
        Display name of the assignee ("" when unassigned)
    estimate_hours : float
        Original estimate, defaults to 0
    completed_hours : float
        Completed work, defaults to 0
    due_date : Optional[datetime]
        Due date (timezone-aware UTC if set)
    finish_date : Optional[datetime]
        Finish date (timezone-aware UTC if set)
    billable : Optional[bool]
        True / False, or None when unknown
    """

    id: int
    title: str = ""
    type: str = ""
    state: str = ""
    parent_id: Optional[int] = None
    assigned_to: str = ""
    estimate_hours: float = 0.0
    completed_hours: float = 0.0
    due_date: Optional[datetime] = None
    finish_date: Optional[datetime] = None
    billable: Optional[bool] = None

    def __post_init__(self) -> None:
        """Validate timezone-aware timestamps."""
        if self.due_date and self.due_date.tzinfo is None:
            raise ValueError(f"WorkItem {self.id}: due_date must be timezone-aware")
        if self.finish_date and self.finish_date.tzinfo is None:
            raise ValueError(f"WorkItem {self.id}: finish_date must be timezone-aware")

    @classmethod
    def from_devops(cls, record: Dict[str, Any]) -> "WorkItem":
        """Build a WorkItem from a workitemsbatch record (``{"id", "fields"}``)."""
        f = record.get("fields") or {}
        return cls(
            id=int(record.get("id", f.get(FIELD_ID))),
            title=f.get(FIELD_TITLE) or "",
            type=f.get(FIELD_TYPE) or "",
            state=f.get(FIELD_STATE) or "",
            assigned_to=display_name(f.get(FIELD_ASSIGNED_TO)),
            estimate_hours=_hours(f.get(FIELD_ORIGINAL_ESTIMATE)),
            completed_hours=_hours(f.get(FIELD_COMPLETED_WORK)),
            due_date=parse_timestamp(f.get(FIELD_DUE_DATE)),
            finish_date=parse_timestamp(f.get(FIELD_FINISH_DATE)),
            billable=parse_billable(f.get(FIELD_BILLABLE)),
        )


@dataclass
class MissingFields:
    """Flags for scheduling fields that were absent at read time."""

    due_date: bool = False
    effort: bool = False
    billable: bool = False

    def any(self) -> bool:
        return self.due_date or self.effort or self.billable

    def to_dict(self) -> Dict[str, bool]:
        return {
            "dueDate": self.due_date,
            "effort": self.effort,
            "billable": self.billable,
        }


@dataclass
class GanttRow:
    """
    Work item annotated for the Gantt view.

    Parameters
    ----------
    item : WorkItem
        Source work item (parent_id already resolved)
    start : datetime
        Synthesized (or phase-aggregated) start, timezone-aware UTC
    finish : datetime
        Synthesized (or phase-aggregated) finish, timezone-aware UTC
    weekly_completed_hours : float
        Hours completed in the trailing 7 days (tasks only)
    missing : MissingFields
        Missing scheduling fields
    depth : int
        Depth in the hierarchy, roots are 0
    """

    item: WorkItem
    start: datetime
    finish: datetime
    weekly_completed_hours: float = 0.0
    missing: MissingFields = field(default_factory=MissingFields)
    depth: int = 0

    def __post_init__(self) -> None:
        """Validate timezone-aware timestamps."""
        if self.start.tzinfo is None:
            raise ValueError(f"GanttRow {self.item.id}: start must be timezone-aware")
        if self.finish.tzinfo is None:
            raise ValueError(f"GanttRow {self.item.id}: finish must be timezone-aware")

    @property
    def id(self) -> int:
        return self.item.id

    @property
    def parent_id(self) -> Optional[int]:
        return self.item.parent_id

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert row to the JSON shape consumed by the dashboard.

        Returns
        -------
        dict
            JSON-serializable representation
        """
        item = self.item
        return {
            "id": item.id,
            "name": item.title,
            "type": item.type,
            "state": item.state,
            "parent": item.parent_id,
            "assignedTo": item.assigned_to,
            "start": self.start.isoformat(),
            "finish": self.finish.isoformat(),
            "est": item.estimate_hours,
            "done": item.completed_hours,
            "doneWeek": self.weekly_completed_hours,
            "billable": item.billable,
            "missing": self.missing.to_dict(),
            "depth": self.depth,
        }

