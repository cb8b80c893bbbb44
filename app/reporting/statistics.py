# ============================================================================
# CEIBA - Incident Statistics Aggregation
# ============================================================================
# Pure aggregation over an incident snapshot for a half-open period
# [period_start, period_end). No I/O happens here; the record source hands
# over the snapshot and the orchestrator persists the result.
# ============================================================================

import json
from collections import Counter
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional

AGE_BUCKETS = [
    ("0-17", 0, 17),
    ("18-25", 18, 25),
    ("26-35", 26, 35),
    ("36-50", 36, 50),
    ("51-65", 51, 65),
    ("66+", 66, None),
]

ACTION_TYPE_LABELS = {
    1: "ATOS",
    2: "Capacitación",
    3: "Prevención",
}

# Record state codes
STATE_DRAFT = 0
STATE_DELIVERED = 1

# Transfer codes
TRANSFER_NO = 0
TRANSFER_YES = 1
TRANSFER_NOT_APPLICABLE = 2


@dataclass
class IncidentRecord:
    """Read-only view of one incident as handed over by the record source."""
    id: int
    created_at: datetime
    crime_type: str = ""
    zone: Optional[str] = None
    age: Optional[int] = None
    sex: Optional[str] = None
    lgbtq: bool = False
    migrant: bool = False
    street_situation: bool = False
    disability: bool = False
    state: int = STATE_DELIVERED
    attention_type: Optional[str] = None
    action_type: Optional[int] = None
    transfer: Optional[int] = None
    folio: str = ""
    reported_facts: str = ""
    actions_taken: str = ""


@dataclass
class ReportStatistics:
    total_count: int = 0
    by_crime_type: Dict[str, int] = field(default_factory=dict)
    by_zone: Dict[str, int] = field(default_factory=dict)
    by_age_bucket: Dict[str, int] = field(default_factory=dict)
    lgbtq_count: int = 0
    migrant_count: int = 0
    street_situation_count: int = 0
    disability_count: int = 0
    most_frequent_crime: str = ""
    most_active_zone: str = ""

    by_sex: Dict[str, int] = field(default_factory=dict)
    by_attention_type: Dict[str, int] = field(default_factory=dict)
    by_action_type: Dict[str, int] = field(default_factory=dict)
    delivered_count: int = 0
    draft_count: int = 0
    with_transfer: int = 0
    without_transfer: int = 0
    transfer_not_applicable: int = 0

    period_start: str = ""
    period_end: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict) -> "ReportStatistics":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_json(cls, raw: str) -> "ReportStatistics":
        if not raw:
            return cls()
        return cls.from_dict(json.loads(raw))


def age_bucket(age: Optional[int]) -> Optional[str]:
    """Map an age to its fixed bucket label, or None when unknown."""
    if age is None or age < 0:
        return None
    for label, low, high in AGE_BUCKETS:
        if age >= low and (high is None or age <= high):
            return label
    return None


def action_type_label(code: Optional[int]) -> str:
    return ACTION_TYPE_LABELS.get(code, "Otro")


def argmax(counts: Dict[str, int]) -> str:
    """Key with the highest count; ties go to the lexicographically smallest key."""
    if not counts:
        return ""
    return min(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0]


def _in_period(record: IncidentRecord, period_start: datetime, period_end: datetime) -> bool:
    if record.created_at is None:
        return True
    return period_start <= record.created_at < period_end


def aggregate(records: Iterable[IncidentRecord],
              period_start: datetime,
              period_end: datetime) -> ReportStatistics:
    """
    Aggregate a record snapshot into ReportStatistics.

    Records timestamped outside [period_start, period_end) are ignored.
    Empty input yields zero counts, empty maps and empty derived fields.
    """
    crime = Counter()
    zone = Counter()
    ages = Counter()
    sex = Counter()
    attention = Counter()
    action = Counter()
    stats = ReportStatistics(
        period_start=period_start.strftime("%Y-%m-%d %H:%M:%S"),
        period_end=period_end.strftime("%Y-%m-%d %H:%M:%S"),
    )

    for rec in records:
        if not _in_period(rec, period_start, period_end):
            continue
        stats.total_count += 1

        if rec.crime_type:
            crime[rec.crime_type] += 1
        if rec.zone:
            zone[rec.zone] += 1
        bucket = age_bucket(rec.age)
        if bucket:
            ages[bucket] += 1
        if rec.sex:
            sex[rec.sex] += 1
        if rec.attention_type:
            attention[rec.attention_type] += 1
        if rec.action_type is not None:
            action[action_type_label(rec.action_type)] += 1

        stats.lgbtq_count += int(bool(rec.lgbtq))
        stats.migrant_count += int(bool(rec.migrant))
        stats.street_situation_count += int(bool(rec.street_situation))
        stats.disability_count += int(bool(rec.disability))

        if rec.state == STATE_DELIVERED:
            stats.delivered_count += 1
        elif rec.state == STATE_DRAFT:
            stats.draft_count += 1

        if rec.transfer == TRANSFER_YES:
            stats.with_transfer += 1
        elif rec.transfer == TRANSFER_NO:
            stats.without_transfer += 1
        elif rec.transfer == TRANSFER_NOT_APPLICABLE:
            stats.transfer_not_applicable += 1

    stats.by_crime_type = dict(crime)
    stats.by_zone = dict(zone)
    stats.by_age_bucket = dict(ages)
    stats.by_sex = dict(sex)
    stats.by_attention_type = dict(attention)
    stats.by_action_type = dict(action)
    stats.most_frequent_crime = argmax(stats.by_crime_type)
    stats.most_active_zone = argmax(stats.by_zone)
    return stats


def sorted_counts(counts: Dict[str, int]) -> List[tuple]:
    """(key, count) pairs ordered by count descending, then key."""
    return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
