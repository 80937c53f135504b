"""
Recurrence Expander

Pure date logic for recurring items. Parses the RRULE subset used by Ballistic,
computes the next occurrence after an anchor date, expands occurrence ranges,
decides the fate of still-open instances (expire or carry over) and plans the
next instance of a template. Nothing in this module touches storage; callers
apply the returned plans.

Supported rule keys: FREQ, INTERVAL, BYDAY, BYMONTHDAY, BYMONTH, COUNT, UNTIL.
Examples:
- FREQ=DAILY                             every day
- FREQ=WEEKLY;BYDAY=MO,TU,WE,TH,FR       weekdays
- FREQ=WEEKLY;INTERVAL=2                 every other week
- FREQ=MONTHLY                           same day each month (clamped)
- FREQ=MONTHLY;BYMONTHDAY=1,15           1st and 15th of each month
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple, Union

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta
from dateutil.rrule import DAILY, MONTHLY, WEEKLY, YEARLY, rrule, rrulestr

from .errors import InvalidRecurrenceRule

logger = logging.getLogger(__name__)

# Index matches date.weekday() and dateutil's weekday numbering: Monday == 0
WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")
FREQUENCIES = {"DAILY": DAILY, "WEEKLY": WEEKLY, "MONTHLY": MONTHLY, "YEARLY": YEARLY}
SUPPORTED_KEYS = frozenset({"FREQ", "INTERVAL", "BYDAY", "BYMONTHDAY", "BYMONTH", "COUNT", "UNTIL"})

DateLike = Union[date, datetime, str]


class RecurrenceStrategy(str, Enum):
    """What happens to an instance that is still open when the next one is due."""

    EXPIRES = "expires"
    CARRY_OVER = "carry_over"

    @classmethod
    def coerce(cls, value: Optional[Union[str, "RecurrenceStrategy"]]) -> "RecurrenceStrategy":
        """Null strategy defaults to expires."""
        if value is None or value == "":
            return cls.EXPIRES
        return cls(value)


class RecurrencePreset(str, Enum):
    """User-facing recurrence choices and their normalised rule strings."""

    NONE = "none"
    DAILY = "daily"
    WEEKDAYS = "weekdays"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def rule(self) -> Optional[str]:
        return RECURRENCE_PRESETS[self]


RECURRENCE_PRESETS: Dict[RecurrencePreset, Optional[str]] = {
    RecurrencePreset.NONE: None,
    RecurrencePreset.DAILY: "FREQ=DAILY",
    RecurrencePreset.WEEKDAYS: "FREQ=WEEKLY;BYDAY=MO,TU,WE,TH,FR",
    RecurrencePreset.WEEKLY: "FREQ=WEEKLY",
    RecurrencePreset.MONTHLY: "FREQ=MONTHLY",
}


class IncompleteInstanceAction(str, Enum):
    EXPIRE = "expire"
    CARRY_OVER = "carry_over"


@dataclass(frozen=True)
class RecurrenceRule:
    """Parsed recurrence rule."""

    freq: str
    interval: int = 1
    by_day: FrozenSet[int] = frozenset()
    by_month_day: Tuple[int, ...] = ()
    by_month: FrozenSet[int] = frozenset()
    count: Optional[int] = None
    until: Optional[date] = None

    def to_string(self) -> str:
        """Render the rule in canonical key order."""
        parts = [f"FREQ={self.freq}"]
        if self.interval != 1:
            parts.append(f"INTERVAL={self.interval}")
        if self.by_day:
            parts.append("BYDAY=" + ",".join(WEEKDAY_CODES[d] for d in sorted(self.by_day)))
        if self.by_month_day:
            parts.append("BYMONTHDAY=" + ",".join(str(d) for d in self.by_month_day))
        if self.by_month:
            parts.append("BYMONTH=" + ",".join(str(m) for m in sorted(self.by_month)))
        if self.count is not None:
            parts.append(f"COUNT={self.count}")
        if self.until is not None:
            parts.append(f"UNTIL={self.until.strftime('%Y%m%d')}")
        return ";".join(parts)


@dataclass
class InstanceResolution:
    """Decision for one still-open instance: the action and the field changes it implies."""

    action: IncompleteInstanceAction
    changes: Dict[str, Any]
    instance_id: Optional[str] = None

    def apply(self, instance: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of the instance with the changes applied."""
        updated = dict(instance)
        updated.update(self.changes)
        return updated


@dataclass
class ExpansionPlan:
    """Outcome of one expansion attempt for a template."""

    template_id: Optional[str]
    next_date: Optional[date]
    resolutions: List[InstanceResolution] = field(default_factory=list)
    spawn: Optional[Dict[str, Any]] = None

    @property
    def finished(self) -> bool:
        """True when the series has ended (UNTIL passed) or the template is gone."""
        return self.next_date is None

    @property
    def carried_over(self) -> bool:
        return any(r.action is IncompleteInstanceAction.CARRY_OVER for r in self.resolutions)


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------

def preset_to_rule(preset: Union[str, RecurrencePreset, None]) -> Optional[str]:
    """Map a recurrence preset name to its rule string (``none`` maps to None)."""
    if preset is None:
        return None
    try:
        return RecurrencePreset(preset).rule
    except ValueError:
        raise InvalidRecurrenceRule(str(preset), "unknown recurrence preset") from None


def rule_to_preset(rule: Optional[str]) -> Optional[RecurrencePreset]:
    """Return the preset a rule corresponds to, or None for custom rules."""
    if rule is None or not rule.strip():
        return RecurrencePreset.NONE
    canonical = parse_rule(rule).to_string()
    for preset, preset_rule in RECURRENCE_PRESETS.items():
        if preset_rule == canonical:
            return preset
    return None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            raise ValueError(f"Invalid date '{value}'. Use ISO 8601 format: YYYY-MM-DD") from None
    raise TypeError(f"Expected a date, got {type(value).__name__}")


def _positive_int(rule_text: str, key: str, raw: str, upper: Optional[int] = None) -> int:
    value = int(raw)
    if value < 1 or (upper is not None and value > upper):
        bound = f"between 1 and {upper}" if upper is not None else "at least 1"
        raise InvalidRecurrenceRule(rule_text, f"{key} must be {bound}")
    return value


def _split_parts(rule: Any, text: str) -> Dict[str, str]:
    parts: Dict[str, str] = {}
    for part in text.split(";"):
        if not part.strip():
            continue
        if "=" not in part:
            raise InvalidRecurrenceRule(rule, f"part '{part}' is not KEY=VALUE")
        key, value = part.split("=", 1)
        key = key.strip().upper()
        value = value.strip().upper()
        if not value:
            raise InvalidRecurrenceRule(rule, f"{key} has no value")
        if key in parts:
            raise InvalidRecurrenceRule(rule, f"{key} given more than once")
        parts[key] = value
    return parts


def parse_rule(rule: Union[str, RecurrenceRule, None]) -> RecurrenceRule:
    """
    Parse a rule string into a RecurrenceRule.

    Values are parsed by dateutil's RFC 5545 reader; this function narrows the
    grammar to the keys and ranges Ballistic supports and normalises the result.

    Raises:
        InvalidRecurrenceRule: rule is empty, lacks FREQ, or uses unsupported
            keys or values.
    """
    if isinstance(rule, RecurrenceRule):
        return rule
    if rule is None or not str(rule).strip():
        raise InvalidRecurrenceRule(rule, "rule is empty")

    text = str(rule).strip()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:"):]

    parts = _split_parts(rule, text)

    unknown = set(parts) - SUPPORTED_KEYS
    if unknown:
        raise InvalidRecurrenceRule(rule, f"unsupported keys: {', '.join(sorted(unknown))}")

    freq = parts.get("FREQ")
    if freq is None:
        raise InvalidRecurrenceRule(rule, "FREQ is required")
    if freq not in FREQUENCIES:
        raise InvalidRecurrenceRule(rule, f"FREQ must be one of {', '.join(FREQUENCIES)}")

    try:
        rrulestr(";".join(f"{k}={v}" for k, v in parts.items()), ignoretz=True)
    except (ValueError, TypeError) as e:
        raise InvalidRecurrenceRule(rule, str(e)) from None

    by_day = set()
    if "BYDAY" in parts:
        for token in parts["BYDAY"].split(","):
            # Ordinal forms such as 1MO parse in dateutil but are not offered
            if token.strip() not in WEEKDAY_CODES:
                raise InvalidRecurrenceRule(rule, f"invalid BYDAY value '{token}'")
            by_day.add(WEEKDAY_CODES.index(token.strip()))

    by_month_day: Tuple[int, ...] = ()
    if "BYMONTHDAY" in parts:
        by_month_day = tuple(sorted({
            _positive_int(rule, "BYMONTHDAY", token, upper=31)
            for token in parts["BYMONTHDAY"].split(",")
        }))

    by_month = set()
    if "BYMONTH" in parts:
        by_month = {
            _positive_int(rule, "BYMONTH", token, upper=12)
            for token in parts["BYMONTH"].split(",")
        }

    until = None
    if "UNTIL" in parts:
        until = date_parser.parse(parts["UNTIL"], ignoretz=True).date()

    return RecurrenceRule(
        freq=freq,
        interval=_positive_int(rule, "INTERVAL", parts["INTERVAL"]) if "INTERVAL" in parts else 1,
        by_day=frozenset(by_day),
        by_month_day=by_month_day,
        by_month=frozenset(by_month),
        count=_positive_int(rule, "COUNT", parts["COUNT"]) if "COUNT" in parts else None,
        until=until,
    )


def validate_rule(rule: Optional[str]) -> bool:
    """Return True if the rule string parses."""
    try:
        parse_rule(rule)
    except InvalidRecurrenceRule:
        return False
    return True


# ---------------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------------

def _clamps(rule: RecurrenceRule) -> bool:
    """Plain monthly and yearly rules keep the start day, clamped to shorter months."""
    return rule.freq in ("MONTHLY", "YEARLY") and not (rule.by_day or rule.by_month_day or rule.by_month)


def _to_rrule(rule: RecurrenceRule, start: date, count: Optional[int] = None) -> rrule:
    return rrule(
        FREQUENCIES[rule.freq],
        dtstart=datetime.combine(start, time.min),
        interval=rule.interval,
        byweekday=sorted(rule.by_day) or None,
        bymonthday=rule.by_month_day or None,
        bymonth=sorted(rule.by_month) or None,
        count=count,
        until=datetime.combine(rule.until, time.min) if rule.until else None,
    )


def _series(rule: RecurrenceRule, start: date, count: Optional[int] = None) -> Iterator[date]:
    """Occurrences of a series that begins at ``start``, in order, honouring UNTIL."""
    if not _clamps(rule):
        for occurrence in _to_rrule(rule, start, count):
            yield occurrence.date()
        return

    step = relativedelta(months=rule.interval) if rule.freq == "MONTHLY" else relativedelta(years=rule.interval)
    produced = 0
    current = start
    while count is None or produced < count:
        if rule.until is not None and current > rule.until:
            return
        yield current
        produced += 1
        current = start + step * produced


def next_occurrence(rule: Union[str, RecurrenceRule], anchor: DateLike) -> Optional[date]:
    """
    Compute the first occurrence strictly after the anchor date.

    Args:
        rule: Rule string or parsed rule
        anchor: Date of the current occurrence (date, datetime or ISO string)

    Returns:
        The next occurrence date, or None when UNTIL has passed
    """
    parsed = parse_rule(rule)
    current = _as_date(anchor)
    return next((d for d in _series(parsed, current) if d > current), None)


def first_occurrence_on_or_after(rule: Union[str, RecurrenceRule], anchor: DateLike,
                                 not_before: DateLike) -> Optional[date]:
    """Advance from the anchor until an occurrence on or after ``not_before`` is found."""
    parsed = parse_rule(rule)
    current = _as_date(anchor)
    floor = max(_as_date(not_before), current + timedelta(days=1))
    return next((d for d in _series(parsed, current) if d >= floor), None)


def occurrences(rule: Union[str, RecurrenceRule], start: DateLike, end: DateLike,
                max_occurrences: int = 100) -> List[date]:
    """
    List occurrences in the inclusive range [start, end].

    The series is taken to begin at ``start``; COUNT limits the number of
    occurrences from there and UNTIL caps the range.
    """
    parsed = parse_rule(rule)
    start_date = _as_date(start)
    end_date = _as_date(end)

    results: List[date] = []
    if start_date > end_date or max_occurrences <= 0:
        return results

    for occurrence in _series(parsed, start_date, parsed.count):
        if occurrence > end_date or len(results) >= max_occurrences:
            break
        results.append(occurrence)
    return results


# ---------------------------------------------------------------------------
# Instance resolution and expansion planning
# ---------------------------------------------------------------------------

def resolve_incomplete_instance(strategy: Union[str, RecurrenceStrategy, None],
                                instance: Dict[str, Any],
                                next_date: Optional[DateLike] = None) -> InstanceResolution:
    """
    Decide what happens to an instance still open when the next occurrence is due.

    expires:    the instance is marked wontdo and its dates are left alone.
    carry_over: the instance's scheduled_date (and due_date, when it has one)
                move to the next occurrence; status is left alone.

    Args:
        strategy: Template strategy; None defaults to expires
        instance: Instance row
        next_date: Newly computed occurrence (required for carry_over)
    """
    resolved = RecurrenceStrategy.coerce(strategy)
    instance_id = instance.get("id")

    if resolved is RecurrenceStrategy.EXPIRES:
        return InstanceResolution(IncompleteInstanceAction.EXPIRE, {"status": "wontdo"}, instance_id)

    if next_date is None:
        raise ValueError("carry_over resolution requires the next occurrence date")

    new_date = _as_date(next_date).isoformat()
    changes: Dict[str, Any] = {"scheduled_date": new_date}
    if instance.get("due_date"):
        changes["due_date"] = new_date
    return InstanceResolution(IncompleteInstanceAction.CARRY_OVER, changes, instance_id)


def _latest_first(instances: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(instances, key=lambda i: i.get("scheduled_date") or "", reverse=True)


class RecurrenceExpander:
    """
    Plans the next instance of a recurring template.

    Usage:
        plan = RecurrenceExpander().plan(template, anchor, open_instances)
        apply plan.resolutions, then create plan.spawn if it is not None

    Only instances scheduled before the next occurrence are resolved. Instances
    already on or after it (generated ahead of time) are left alone and stand in
    for the spawn. At most one stale instance is carried over (the most recently
    scheduled), and none when an instance is already waiting ahead; the rest expire.
    """

    def plan(self, template: Dict[str, Any], anchor: DateLike,
             open_instances: Iterable[Dict[str, Any]] = (),
             existing_dates: Iterable[str] = (),
             not_before: Optional[DateLike] = None) -> ExpansionPlan:
        """
        Build the expansion plan for a template.

        Args:
            template: Template row (must be a live recurring template)
            anchor: Date the next occurrence is computed from
            open_instances: Other instances of this template still todo/doing
            existing_dates: scheduled_date values of instances that already exist
            not_before: Skip occurrences before this date (scheduled sweeps)

        Raises:
            InvalidRecurrenceRule: the template has no usable rule
        """
        template_id = template.get("id")
        rule = template.get("recurrence_rule")
        if not template.get("is_recurring_template") or not rule:
            raise InvalidRecurrenceRule(rule, "item is not a recurring template")

        if template.get("deleted_at"):
            logger.info(f"Template {template_id} is deleted; no further instances")
            return ExpansionPlan(template_id, None)

        if not_before is not None:
            next_date = first_occurrence_on_or_after(rule, anchor, not_before)
        else:
            next_date = next_occurrence(rule, anchor)

        if next_date is None:
            logger.info(f"Recurrence for template {template_id} has ended")
            return ExpansionPlan(template_id, None)

        next_str = next_date.isoformat()
        pending = list(open_instances)
        stale = [i for i in pending if (i.get("scheduled_date") or "") < next_str]
        waiting = len(stale) < len(pending)

        strategy = RecurrenceStrategy.coerce(template.get("recurrence_strategy"))
        resolutions: List[InstanceResolution] = []
        for index, instance in enumerate(_latest_first(stale)):
            effective = strategy if index == 0 and not waiting else RecurrenceStrategy.EXPIRES
            resolutions.append(resolve_incomplete_instance(effective, instance, next_date))

        plan = ExpansionPlan(template_id, next_date, resolutions)
        if not (plan.carried_over or waiting) and next_str not in set(existing_dates):
            plan.spawn = self.spawn_fields(template, next_date)
        return plan

    def spawn_fields(self, template: Dict[str, Any], occurrence: DateLike) -> Dict[str, Any]:
        """Field set for a new instance of the template on the given date."""
        occurrence_str = _as_date(occurrence).isoformat()
        return {
            "user_id": template["user_id"],
            "project_id": template.get("project_id"),
            "title": template["title"],
            "description": template.get("description"),
            "status": "todo",
            "position": template.get("position", 0),
            "scheduled_date": occurrence_str,
            "due_date": occurrence_str if template.get("due_date") else None,
            "recurrence_parent_id": template["id"],
            "recurrence_strategy": template.get("recurrence_strategy"),
            "is_recurring_template": False,
            "is_recurring_instance": True,
        }
