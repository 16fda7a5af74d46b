"""
Gantt Row Aggregator for the DevOps Gantt view.

This module turns the raw Azure DevOps response for one project into the
ordered row sequence the dashboard renders.

The aggregator:
1. Resolves parents from the recursive hierarchy link table
2. Synthesizes start/finish dates and missing-field flags per item
3. Aggregates phase date ranges from their direct children
4. Derives weekly completed hours from revision history (tasks only)
5. Linearizes the tree depth-first with depth annotations

Every stage works on mappings built once per request; nothing survives
between requests.
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from devops_gantt.core.store import (
    FIELD_COMPLETED_WORK,
    GANTT_FIELDS,
    TYPE_DEMAND,
    TYPE_PROJECT,
    TYPE_TASK,
    GanttRow,
    LinkEdge,
    MissingFields,
    WorkItem,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

# One estimate unit spans six elapsed hours on the chart
HOURS_PER_ESTIMATE_UNIT = 6
WEEK = timedelta(days=7)

DEFAULT_PHASE_PATTERN = r"^P[1-9]\."
DEFAULT_TARGET_TYPES: Tuple[str, ...] = (TYPE_PROJECT, TYPE_DEMAND, TYPE_TASK)

# Bucket key for rows without a parent
ROOT = None

PhasePredicate = Callable[[WorkItem], bool]
UpdatesReader = Callable[[int], Awaitable[List[Dict[str, Any]]]]


def phase_title_matcher(pattern: str = DEFAULT_PHASE_PATTERN) -> PhasePredicate:
    """
    Build a phase predicate that matches work item titles.

    Parameters
    ----------
    pattern : str
        Regular expression matched case-insensitively at the start of the
        title (default matches "P1." through "P9.")

    Returns
    -------
    Callable[[WorkItem], bool]
        Predicate accepting phase work items
    """
    regex = re.compile(pattern, re.IGNORECASE)

    def is_phase(item: WorkItem) -> bool:
        return bool(regex.match(item.title or ""))

    return is_phase


def resolve_parents(
    edges: Iterable[LinkEdge], log: logging.Logger = logger
) -> Mapping[int, int]:
    """
    Build the child -> parent lookup from hierarchy edges.

    Edges missing either endpoint are dropped. When several edges point at
    the same target the first one wins; later conflicting edges are logged
    and ignored.

    Parameters
    ----------
    edges : Iterable[LinkEdge]
        Edges in the order the link query returned them
    log : logging.Logger
        Logger for conflict reporting

    Returns
    -------
    Mapping[int, int]
        Read-only mapping of target id to source id
    """
    parents: Dict[int, int] = {}
    dropped = 0
    for edge in edges:
        if edge.source is None or edge.target is None:
            dropped += 1
            continue
        existing = parents.get(edge.target)
        if existing is None:
            parents[edge.target] = edge.source
        elif existing != edge.source:
            log.warning(
                f"Work item {edge.target} linked under both {existing} and "
                f"{edge.source}; keeping {existing}"
            )

    if dropped:
        log.debug(f"Dropped {dropped} link relations without source or target")
    return MappingProxyType(parents)


def synthesize_dates(
    due_date: Optional[datetime],
    finish_date: Optional[datetime],
    estimate_hours: Optional[float],
    now: datetime,
) -> Tuple[datetime, datetime]:
    """
    Derive (start, finish) for a work item by filling backwards.

    The finish date wins over the due date, which wins over ``now``. The
    start is the finish minus the estimate, six hours per estimate unit.
    """
    finish = finish_date or due_date or now
    duration = timedelta(hours=(estimate_hours or 0) * HOURS_PER_ESTIMATE_UNIT)
    return finish - duration, finish


def analyze_missing(
    due_date: Optional[datetime],
    finish_date: Optional[datetime],
    estimate_hours: Optional[float],
    billable: Optional[bool],
) -> MissingFields:
    """Flag absent due date, non-positive effort and unknown billability."""
    return MissingFields(
        due_date=due_date is None and finish_date is None,
        effort=not (estimate_hours is not None and estimate_hours > 0),
        billable=billable is None,
    )


def build_row(item: WorkItem, now: datetime) -> GanttRow:
    """Wrap a work item in a GanttRow with synthesized dates and flags."""
    start, finish = synthesize_dates(
        item.due_date, item.finish_date, item.estimate_hours, now
    )
    return GanttRow(
        item=item,
        start=start,
        finish=finish,
        missing=analyze_missing(
            item.due_date, item.finish_date, item.estimate_hours, item.billable
        ),
    )


def aggregate_phases(
    rows: Sequence[GanttRow],
    is_phase: PhasePredicate,
    log: logging.Logger = logger,
) -> None:
    """
    Stretch each phase over the date range of its direct children.

    Children are read with the dates they had before this pass, so nested
    phases do not feed each other. Phases without children keep their own
    synthesized dates.

    Parameters
    ----------
    rows : Sequence[GanttRow]
        All rows of the request (modified in place)
    is_phase : Callable[[WorkItem], bool]
        Phase classification predicate
    log : logging.Logger
        Logger for tracing
    """
    synthesized = {row.id: (row.start, row.finish) for row in rows}
    children_by_parent: Dict[int, List[int]] = {}
    for row in rows:
        if row.parent_id is not None:
            children_by_parent.setdefault(row.parent_id, []).append(row.id)

    for row in rows:
        if not is_phase(row.item):
            continue
        child_ids = children_by_parent.get(row.id)
        if not child_ids:
            continue
        row.start = min(synthesized[cid][0] for cid in child_ids)
        row.finish = max(synthesized[cid][1] for cid in child_ids)
        log.debug(
            f"Phase {row.id} '{row.item.title}' aggregated over "
            f"{len(child_ids)} children: {row.start.isoformat()} -> "
            f"{row.finish.isoformat()}"
        )


def completed_work_this_week(
    updates: Iterable[Dict[str, Any]], total_done: float, now: datetime
) -> float:
    """
    Hours completed in the trailing seven days.

    The baseline is the CompletedWork value of the latest change revised
    strictly before the cutoff (0 when there is none).

    Parameters
    ----------
    updates : Iterable[dict]
        Revision updates as returned by the work item updates endpoint
    total_done : float
        Current CompletedWork value
    now : datetime
        Evaluation time (timezone-aware)

    Returns
    -------
    float
        Non-negative hours completed since the cutoff
    """
    cutoff = now - WEEK
    baseline = 0.0
    baseline_at: Optional[datetime] = None

    for update in updates:
        if not isinstance(update, dict):
            continue
        fields = update.get("fields")
        change = fields.get(FIELD_COMPLETED_WORK) if isinstance(fields, dict) else None
        if not isinstance(change, dict):
            continue
        revised = parse_timestamp(update.get("revisedDate"))
        if revised is None or revised >= cutoff:
            continue
        if baseline_at is not None and revised < baseline_at:
            continue
        value = change.get("newValue")
        if value is None:
            value = change.get("oldValue")
        if value is None:
            continue
        baseline = float(value)
        baseline_at = revised

    return max(0.0, (total_done or 0.0) - baseline)


async def weekly_completed_hours(
    read_updates: UpdatesReader,
    work_item_id: int,
    total_done: float,
    now: datetime,
    timeout: Optional[float] = None,
    log: logging.Logger = logger,
) -> float:
    """
    Read one item's history and compute its weekly completed hours.

    Any failure, including a timeout or a malformed history entry,
    degrades to 0 so a single broken history never aborts the batch.
    """
    try:
        updates = await asyncio.wait_for(read_updates(work_item_id), timeout)
    except asyncio.TimeoutError:
        log.warning(f"History read for work item {work_item_id} timed out after {timeout}s")
        return 0.0
    except Exception as e:
        log.warning(f"History read for work item {work_item_id} failed: {e}")
        return 0.0
    try:
        return completed_work_this_week(updates, total_done, now)
    except (TypeError, ValueError) as e:
        log.warning(f"Unreadable CompletedWork history for work item {work_item_id}: {e}")
        return 0.0


def bucket_by_parent(
    rows: Sequence[GanttRow], log: logging.Logger = logger
) -> Mapping[Optional[int], Tuple[GanttRow, ...]]:
    """
    Group rows by parent id, preserving input order within each bucket.

    Rows whose parent is not part of the result set land in the root
    bucket so they still render.
    """
    known_ids = {row.id for row in rows}
    buckets: Dict[Optional[int], List[GanttRow]] = {}
    for row in rows:
        key = row.parent_id
        if key is not None and key not in known_ids:
            log.warning(
                f"Work item {row.id} references parent {key} outside the result set; "
                f"treating it as a root"
            )
            key = ROOT
        buckets.setdefault(key, []).append(row)
    return MappingProxyType({k: tuple(v) for k, v in buckets.items()})


def clear_missing_for_parents(
    rows: Sequence[GanttRow],
    buckets: Mapping[Optional[int], Tuple[GanttRow, ...]],
) -> None:
    """Rows with children never report missing fields."""
    for row in rows:
        if buckets.get(row.id):
            row.missing = MissingFields()


def order_rows(
    buckets: Mapping[Optional[int], Tuple[GanttRow, ...]]
) -> List[GanttRow]:
    """
    Pre-order depth-first linearization starting from the root bucket.

    Each row is emitted with its depth set, followed by its full subtree,
    before the next sibling.
    """
    ordered: List[GanttRow] = []

    def visit(parent_key: Optional[int], depth: int) -> None:
        for row in buckets.get(parent_key, ()):
            row.depth = depth
            ordered.append(row)
            visit(row.id, depth + 1)

    visit(ROOT, 0)
    return ordered


class Aggregator:
    """
    Builds the ordered Gantt rows for one project root.

    The aggregator holds configuration and collaborators only; every call
    to ``build_rows`` starts from a fresh read of Azure DevOps.
    """

    def __init__(
        self,
        client: Any,
        is_phase: Optional[PhasePredicate] = None,
        target_types: Sequence[str] = DEFAULT_TARGET_TYPES,
        history_concurrency: int = 8,
        history_timeout: Optional[float] = 30.0,
        log: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the aggregator.

        Parameters
        ----------
        client : DevOpsClient
            Work item store client (hierarchy query, batch read, updates)
        is_phase : Optional[Callable[[WorkItem], bool]]
            Phase predicate. Defaults to titles starting with "P1." .. "P9."
        target_types : Sequence[str]
            Work item types followed by the hierarchy query
        history_concurrency : int
            Maximum number of concurrent history reads
        history_timeout : Optional[float]
            Per-item history read timeout in seconds (None = no timeout)
        log : Optional[logging.Logger]
            Logger used by the pipeline (defaults to this module's logger)
        clock : Optional[Callable[[], datetime]]
            Source of the evaluation time (defaults to UTC now)
        """
        self.client = client
        self.is_phase = is_phase or phase_title_matcher()
        self.target_types = tuple(target_types)
        self.history_concurrency = max(1, history_concurrency)
        self.history_timeout = history_timeout
        self.log = log or logger
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def build_rows(self, root_id: int) -> List[GanttRow]:
        """
        Read the hierarchy below ``root_id`` and return the ordered rows.

        Store failures while reading links or work items propagate to the
        caller; history failures only zero the affected item.

        Parameters
        ----------
        root_id : int
            Work item id of the project root

        Returns
        -------
        List[GanttRow]
            Depth-first ordered rows with depth set
        """
        now = self.clock()
        self.log.info(f"Building Gantt rows for root {root_id}")

        edges = await self.client.query_hierarchy(root_id, self.target_types)
        ids = self._collect_ids(root_id, edges)
        self.log.info(f"Hierarchy for {root_id}: {len(edges)} relations, {len(ids)} work items")

        records = await self.client.read_work_items(ids, GANTT_FIELDS)
        items = [WorkItem.from_devops(record) for record in records]

        weekly = await self.compute_weekly_hours(items, now)
        rows = self.assemble_rows(items, edges, weekly, now)

        self.log.info(f"Returning {len(rows)} rows for root {root_id}")
        return rows

    def assemble_rows(
        self,
        items: Sequence[WorkItem],
        edges: Iterable[LinkEdge],
        weekly: Optional[Mapping[int, float]] = None,
        now: Optional[datetime] = None,
    ) -> List[GanttRow]:
        """
        Pure part of the pipeline: no I/O, only the inputs given.

        Parameters
        ----------
        items : Sequence[WorkItem]
            Work items read for the request
        edges : Iterable[LinkEdge]
            Hierarchy edges from the link query
        weekly : Optional[Mapping[int, float]]
            Weekly completed hours by work item id (missing ids get 0)
        now : Optional[datetime]
            Evaluation time for items without any date

        Returns
        -------
        List[GanttRow]
            Depth-first ordered rows
        """
        now = now or self.clock()
        weekly = weekly or {}
        parents = resolve_parents(edges, self.log)

        rows: List[GanttRow] = []
        for item in items:
            item.parent_id = parents.get(item.id)
            row = build_row(item, now)
            row.weekly_completed_hours = weekly.get(item.id, 0.0)
            rows.append(row)
            self.log.debug(
                f"Row {item.id} '{item.title}' parent={item.parent_id} "
                f"start={row.start.isoformat()} finish={row.finish.isoformat()}"
            )

        aggregate_phases(rows, self.is_phase, self.log)

        buckets = bucket_by_parent(rows, self.log)
        clear_missing_for_parents(rows, buckets)
        incomplete = sum(1 for row in rows if row.missing.any())
        if incomplete:
            self.log.info(f"{incomplete} of {len(rows)} rows have missing scheduling fields")
        return order_rows(buckets)

    async def compute_weekly_hours(
        self, items: Sequence[WorkItem], now: datetime
    ) -> Dict[int, float]:
        """
        Weekly completed hours for every Task item, read concurrently.

        Reads are bounded by ``history_concurrency`` and all of them finish
        before this returns.
        """
        tasks = [item for item in items if item.type == TYPE_TASK]
        if not tasks:
            return {}

        semaphore = asyncio.Semaphore(self.history_concurrency)

        async def one(item: WorkItem) -> Tuple[int, float]:
            async with semaphore:
                hours = await weekly_completed_hours(
                    self.client.read_updates,
                    item.id,
                    item.completed_hours,
                    now,
                    timeout=self.history_timeout,
                    log=self.log,
                )
            return item.id, hours

        results = await asyncio.gather(*(one(item) for item in tasks))
        self.log.info(f"Computed weekly completed hours for {len(results)} tasks")
        return dict(results)

    def _collect_ids(self, root_id: int, edges: Iterable[LinkEdge]) -> List[int]:
        """Root first, then every link target once, in query order."""
        ids = [root_id]
        seen = {root_id}
        for edge in edges:
            if edge.target is not None and edge.target not in seen:
                seen.add(edge.target)
                ids.append(edge.target)
        return ids
