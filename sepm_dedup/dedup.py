"""
Duplicate detection and cleanup for SEPM client inventories.

Grouping, retention and deletion operate on an explicit RunContext so a run
owns all of its state; nothing here is module-global.
"""
import time
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sepm_dedup.errors import DeletionFailure

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

DEFAULT_THRESHOLD = 2
DEFAULT_DELETE_DELAY_SECONDS = 1.3
KEY_FIELDS = ("name", "hardware")

RETAINED = "retained"
WOULD_DELETE = "would_delete"
DELETED = "deleted"
FAILED = "failed"


def _epoch_seconds(val) -> Optional[float]:
    if val in (None, ""):
        return None
    try:
        ts = float(val)
    except (TypeError, ValueError):
        return None
    # Anything past 1e11 only makes sense as milliseconds
    return ts / 1000 if ts > 1e11 else ts


def _parse_time(val) -> Optional[datetime]:
    ts = _epoch_seconds(val)
    if ts is None:
        return None
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


@dataclass
class ClientRecord:
    unique_id: str
    name: Optional[str]
    hardware_key: Optional[str] = None
    last_checkin: Optional[int] = None
    fetch_index: int = 0
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, raw: Dict[str, Any], fetch_index: int = 0) -> "ClientRecord":
        last = raw.get("lastUpdateTime")
        try:
            last = int(last) if last not in (None, "") else None
        except (TypeError, ValueError):
            last = None
        return cls(
            unique_id=raw.get("uniqueId"),
            name=raw.get("computerName"),
            hardware_key=raw.get("hardwareKey"),
            last_checkin=last,
            fetch_index=fetch_index,
            raw=raw,
        )

    def checkin_at(self) -> Optional[datetime]:
        return _parse_time(self.last_checkin)

    def checkin_seconds(self) -> Optional[float]:
        return _epoch_seconds(self.last_checkin)

    def key_for(self, key_field: str) -> Optional[str]:
        if key_field == "hardware":
            return self.hardware_key
        return self.name

    def describe(self) -> str:
        at = self.checkin_at()
        stamp = at.strftime("%Y-%m-%d %H:%M:%S UTC") if at else "never"
        return f"name={self.name} id={self.unique_id} hardware_key={self.hardware_key} last_checkin={stamp}"


@dataclass
class DuplicateGroup:
    key: str
    members: List[ClientRecord]

    def __len__(self) -> int:
        return len(self.members)


@dataclass
class RecordOutcome:
    record: ClientRecord
    action: str
    error: Optional[str] = None


@dataclass
class RunResult:
    groups_found: int = 0
    deleted: int = 0
    dry_run: bool = True
    outcomes: List[RecordOutcome] = field(default_factory=list)

    def by_action(self, action: str) -> List[RecordOutcome]:
        return [o for o in self.outcomes if o.action == action]


@dataclass
class RunContext:
    """State owned by a single dedup run."""
    dry_run: bool = True
    threshold: int = DEFAULT_THRESHOLD
    key_field: str = "name"
    delete_delay_seconds: float = DEFAULT_DELETE_DELAY_SECONDS
    records: List[ClientRecord] = field(default_factory=list)
    result: RunResult = field(default_factory=RunResult)

    def __post_init__(self):
        if self.key_field not in KEY_FIELDS:
            raise ValueError(f"key_field must be one of {KEY_FIELDS}, got {self.key_field!r}")
        if self.threshold < 0:
            raise ValueError("threshold must be >= 0")
        self.result.dry_run = self.dry_run


def group_duplicates(records: List[ClientRecord], threshold: int = DEFAULT_THRESHOLD,
                     key_field: str = "name") -> List[DuplicateGroup]:
    """Groups sharing a key with strictly more than `threshold` members.

    Keys are compared exactly as the server returned them. Records with no
    key value, or no uniqueId to delete by, are never grouped.
    """
    buckets: "OrderedDict[str, List[ClientRecord]]" = OrderedDict()
    skipped = 0
    for rec in records:
        if rec.unique_id in (None, ""):
            logger.warning(f"[group] skipping record without uniqueId name={rec.name} hardware_key={rec.hardware_key}")
            continue
        key = rec.key_for(key_field)
        if key in (None, ""):
            skipped += 1
            continue
        buckets.setdefault(key, []).append(rec)
    if skipped:
        logger.info(f"[group] skipped={skipped} records without a {key_field} key")
    groups = [DuplicateGroup(k, v) for k, v in buckets.items() if len(v) > threshold]
    logger.info(f"[group] keys={len(buckets)} over_threshold={len(groups)} threshold={threshold} key={key_field}")
    return groups


def select_retention(group: DuplicateGroup) -> Tuple[ClientRecord, List[ClientRecord]]:
    """Most recent check-in wins; equal timestamps keep the earliest fetched.

    Timestamps are compared in seconds, so a millisecond value only wins
    when it is actually later.
    """
    def _order(r: ClientRecord):
        ts = r.checkin_seconds()
        return (-(ts if ts is not None else float("-inf")), r.fetch_index)

    ordered = sorted(group.members, key=_order)
    return ordered[0], ordered[1:]


class DeletionExecutor:
    """Removes non-retained records, one at a time, honouring dry-run."""

    def __init__(self, delete: Callable[[str], None], ctx: RunContext,
                 sleep: Callable[[float], None] = time.sleep):
        self._delete = delete
        self.ctx = ctx
        self._sleep = sleep

    def process_group(self, group: DuplicateGroup) -> None:
        keep, remove = select_retention(group)
        result = self.ctx.result
        logger.info(f"[delete] group key={group.key} members={len(group)} keep {keep.describe()}")
        result.outcomes.append(RecordOutcome(keep, RETAINED))
        for rec in remove:
            if self.ctx.dry_run:
                logger.info(f"[delete] DRY-RUN would delete {rec.describe()}")
                result.outcomes.append(RecordOutcome(rec, WOULD_DELETE))
                continue
            try:
                self._delete(rec.unique_id)
            except DeletionFailure as e:
                logger.error(f"[delete] FAILED {rec.describe()} err={e}; aborting run")
                result.outcomes.append(RecordOutcome(rec, FAILED, str(e)))
                if e.record is None:
                    e.record = rec
                raise
            result.deleted += 1
            result.outcomes.append(RecordOutcome(rec, DELETED))
            logger.info(f"[delete] deleted {rec.describe()} total_deleted={result.deleted}")
            # Server throttles after ~50 rapid requests
            self._sleep(self.ctx.delete_delay_seconds)

    def process_all(self, groups: List[DuplicateGroup]) -> RunResult:
        self.ctx.result.groups_found = len(groups)
        for group in groups:
            self.process_group(group)
        return self.ctx.result


__all__ = [
    "ClientRecord", "DuplicateGroup", "RecordOutcome", "RunResult", "RunContext",
    "group_duplicates", "select_retention", "DeletionExecutor",
]
