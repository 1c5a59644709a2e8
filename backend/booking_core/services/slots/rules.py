# backend/booking_core/services/slots/rules.py
"""
Policy rule evaluator.

A rule is a pure function of (rule, context) returning pass/fail plus a
machine-readable reason. Rules run in (priority desc, id asc) order and
evaluation stops at the first failure.

New rule kinds are added with @register_rule("kind").
"""

import logging
import sys
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable

from .catalog import ResourceRef, RuleSpec, ServiceSpec
from .intervals import Interval
from .store import ContextReservation

logger = logging.getLogger(__name__)

# Service lead time runs ahead of every catalog rule.
SERVICE_LEAD_TIME_RULE_ID = 0
SERVICE_LEAD_TIME_PRIORITY = sys.maxsize


@dataclass(frozen=True)
class RuleOutcome:
    passed: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> "RuleOutcome":
        return cls(True)

    @classmethod
    def fail(cls, reason: str) -> "RuleOutcome":
        return cls(False, reason)


@dataclass(frozen=True)
class RuleContext:
    service: ServiceSpec
    resource: ResourceRef
    slot: Interval  # display interval, UTC
    local_start: datetime
    now: datetime
    reservations: tuple[ContextReservation, ...] = field(default_factory=tuple)
    local_day_of: Callable[[datetime], date] | None = None

    @property
    def local_date(self) -> date:
        return self.local_start.date()


@dataclass(frozen=True)
class Verdict:
    passed: bool
    rule: RuleSpec | None = None
    reason: str | None = None
    evaluated: int = 0


RuleFn = Callable[[RuleSpec, RuleContext], RuleOutcome]

RULE_REGISTRY: dict[str, RuleFn] = {}


def register_rule(kind: str) -> Callable[[RuleFn], RuleFn]:
    def decorator(fn: RuleFn) -> RuleFn:
        RULE_REGISTRY[kind] = fn
        return fn
    return decorator


def order_rules(rules: list[RuleSpec], service: ServiceSpec | None = None) -> list[RuleSpec]:
    """Total order (priority desc, id asc); service lead time first."""
    ordered = sorted(rules, key=lambda r: (-r.priority, r.id))
    if service is not None and service.lead_time_min > 0:
        ordered.insert(0, RuleSpec(
            id=SERVICE_LEAD_TIME_RULE_ID,
            kind="lead_time",
            priority=SERVICE_LEAD_TIME_PRIORITY,
            payload={"minutes": service.lead_time_min},
        ))
    return ordered


def evaluate(ordered_rules: list[RuleSpec], ctx: RuleContext) -> Verdict:
    """Run already-ordered rules, stopping at the first failure."""
    evaluated = 0
    for rule in ordered_rules:
        fn = RULE_REGISTRY.get(rule.kind)
        evaluated += 1
        if fn is None:
            logger.warning(f"Unknown policy rule kind {rule.kind!r} (rule {rule.id}), failing closed")
            return Verdict(False, rule, "unknown_rule_kind", evaluated)
        if rule.payload.get("_invalid"):
            return Verdict(False, rule, "invalid_rule_payload", evaluated)

        outcome = fn(rule, ctx)
        if not outcome.passed:
            return Verdict(False, rule, outcome.reason, evaluated)
    return Verdict(True, evaluated=evaluated)


# ── Built-in rules ───────────────────────────────────────────────────────


def _same_service(ctx: RuleContext) -> list[ContextReservation]:
    return [
        r for r in ctx.reservations
        if r.service_id == ctx.service.id and r.primary_resource_id == ctx.resource.id
    ]


@register_rule("max_daily")
def max_daily(rule: RuleSpec, ctx: RuleContext) -> RuleOutcome:
    limit = int(rule.payload.get("limit", 0))
    day_of = ctx.local_day_of or (lambda dt: dt.date())
    count = sum(1 for r in _same_service(ctx) if day_of(r.start) == ctx.local_date)
    if count >= limit:
        return RuleOutcome.fail(f"max_daily_reached:{count}/{limit}")
    return RuleOutcome.ok()


@register_rule("min_gap")
def min_gap(rule: RuleSpec, ctx: RuleContext) -> RuleOutcome:
    gap = timedelta(minutes=int(rule.payload.get("minutes", 0)))
    for r in _same_service(ctx):
        # Starts within `gap` after another ends, or ends within `gap` before another starts.
        if r.end <= ctx.slot.start < r.end + gap:
            return RuleOutcome.fail(f"min_gap_after:{r.id}")
        if r.start - gap < ctx.slot.end <= r.start:
            return RuleOutcome.fail(f"min_gap_before:{r.id}")
    return RuleOutcome.ok()


@register_rule("lead_time")
def lead_time(rule: RuleSpec, ctx: RuleContext) -> RuleOutcome:
    minimum = timedelta(minutes=int(rule.payload.get("minutes", 0)))
    if ctx.slot.start - ctx.now < minimum:
        return RuleOutcome.fail("lead_time_not_met")
    return RuleOutcome.ok()


@register_rule("allowed_resource")
def allowed_resource(rule: RuleSpec, ctx: RuleContext) -> RuleOutcome:
    allowed = {int(rid) for rid in rule.payload.get("resource_ids", [])}
    if ctx.resource.id not in allowed:
        return RuleOutcome.fail("resource_not_allowed")
    return RuleOutcome.ok()


@register_rule("blackout")
def blackout(rule: RuleSpec, ctx: RuleContext) -> RuleOutcome:
    scoped = rule.payload.get("resource_ids")
    if scoped and ctx.resource.id not in {int(rid) for rid in scoped}:
        return RuleOutcome.ok()

    try:
        start = date.fromisoformat(rule.payload["date_start"])
        end = date.fromisoformat(rule.payload.get("date_end") or rule.payload["date_start"])
    except (KeyError, ValueError):
        return RuleOutcome.fail("invalid_rule_payload")

    if start <= ctx.local_date <= end:
        return RuleOutcome.fail(f"blackout:{start.isoformat()}..{end.isoformat()}")
    return RuleOutcome.ok()
