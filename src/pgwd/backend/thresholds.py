# src/pgwd/backend/thresholds.py

"""
Threshold Evaluator
===================
Turns one stats snapshot into zero or more alert events.

Conditions are independent and non-exclusive; each produces at most one event.
Order (stale, total, active, idle, forced test) only affects presentation.
Boundaries are inclusive: `measured >= threshold` fires.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

from ..config import ThresholdConfig
from ..errors import NoThresholdsConfigured
from ..infrastructure.postgres import ConnectionStats


class AlertKind(str, Enum):
    TOTAL = 'total'
    ACTIVE = 'active'
    IDLE = 'idle'
    STALE = 'stale'
    TEST = 'test'
    CONNECT_FAILURE = 'connect_failure'
    TOO_MANY_CLIENTS = 'too_many_clients'

    @property
    def is_connect_failure(self) -> bool:
        return self in (AlertKind.CONNECT_FAILURE, AlertKind.TOO_MANY_CLIENTS)


@dataclass(frozen=True)
class EventContext:
    """Where the alert comes from, shown by the channels when non-empty."""
    cluster: str = ''
    client: str = ''
    namespace: str = ''
    database: str = ''


@dataclass(frozen=True)
class AlertEvent:
    kind: AlertKind
    message: str
    measured_value: int = 0
    threshold_value: int = 0
    capacity: int = 0
    capacity_is_override: bool = False
    context: EventContext = field(default_factory=EventContext)
    stats: ConnectionStats = field(default_factory=ConnectionStats)


StaleCounter = Callable[[int], Awaitable[int]]


# ------------------------------------------------------------------
# DEFAULTS
# ------------------------------------------------------------------


def clamp_percent(percent: int) -> int:
    return max(1, min(100, percent))


def derive_defaults(thresholds: ThresholdConfig, capacity: int,
                    override_capacity: int = 0) -> Tuple[ThresholdConfig, int]:
    """
    Fills total/active thresholds left at 0 with `default_percent` of capacity.

    Runs once, before the loop. `override_capacity` (> 0) replaces the server
    value, for exercising alerts against a small fake max_connections.
    Thresholds already set are never touched.

    Returns:
        (thresholds, effective_capacity); effective_capacity is 0 when unknown.
    """
    effective_capacity = override_capacity if override_capacity > 0 else max(capacity, 0)
    if effective_capacity <= 0:
        return thresholds, 0

    percent = clamp_percent(thresholds.default_percent)
    default = max(1, effective_capacity * percent // 100)
    derived = replace(
        thresholds,
        total=thresholds.total or default,
        active=thresholds.active or default,
    )
    return derived, effective_capacity


def require_thresholds(thresholds: ThresholdConfig, effective_capacity: int,
                       dry_run: bool, force_notification: bool,
                       capacity_error: Optional[BaseException] = None):
    """Raises NoThresholdsConfigured when a run could never alert."""
    if thresholds.has_any() or dry_run or force_notification:
        return
    hint = 'Set --threshold-total and/or --threshold-active, or use --dry-run or --force-notification'
    if capacity_error is not None:
        raise NoThresholdsConfigured(
            f'no thresholds set and could not default from server: {capacity_error}. {hint}',
            {'error': str(capacity_error)}
        )
    if effective_capacity <= 0:
        raise NoThresholdsConfigured(
            f'no thresholds set and could not default from server (max_connections=0). {hint}'
        )
    raise NoThresholdsConfigured(f'no thresholds set. {hint}')


# ------------------------------------------------------------------
# EVALUATION
# ------------------------------------------------------------------


async def evaluate(stats: ConnectionStats, thresholds: ThresholdConfig, capacity: int,
                   stale_counter: Optional[StaleCounter] = None,
                   force_notification: bool = False,
                   capacity_is_override: bool = False,
                   context: Optional[EventContext] = None,
                   logger=None) -> List[AlertEvent]:
    base = AlertEvent(
        kind=AlertKind.TEST,
        message='',
        capacity=capacity,
        capacity_is_override=capacity_is_override,
        context=context or EventContext(),
        stats=stats,
    )
    events = []

    if thresholds.stale_age_seconds > 0 and thresholds.stale > 0 and stale_counter is not None:
        try:
            stale_count = await stale_counter(thresholds.stale_age_seconds)
        except Exception as e:
            # Not evaluated this cycle; the next cycle queries again.
            if logger:
                logger.log_struct({
                    'event': 'stale_count_failed',
                    'error': str(e),
                    'stale_age_seconds': thresholds.stale_age_seconds
                }, severity='ERROR')
        else:
            if stale_count >= thresholds.stale:
                events.append(replace(
                    base,
                    kind=AlertKind.STALE,
                    measured_value=stale_count,
                    threshold_value=thresholds.stale,
                    message=(f'Stale connections (open > {thresholds.stale_age_seconds}s): '
                             f'{stale_count} >= {thresholds.stale}'),
                ))

    for kind, label, measured, limit in (
        (AlertKind.TOTAL, 'Total', stats.total, thresholds.total),
        (AlertKind.ACTIVE, 'Active', stats.active, thresholds.active),
        (AlertKind.IDLE, 'Idle', stats.idle, thresholds.idle),
    ):
        if limit > 0 and measured >= limit:
            events.append(replace(
                base,
                kind=kind,
                measured_value=measured,
                threshold_value=limit,
                message=f'{label} connections {measured} >= {limit}',
            ))

    if force_notification:
        events.append(replace(
            base,
            kind=AlertKind.TEST,
            message='Test notification: delivery check (force-notification).',
        ))

    return events


def connect_failure_event(error: BaseException, context: Optional[EventContext] = None) -> AlertEvent:
    """Event for a failed pool open; too-many-clients gets the more urgent wording."""
    too_many = bool(getattr(error, 'too_many_clients', False))
    if too_many:
        return AlertEvent(
            kind=AlertKind.TOO_MANY_CLIENTS,
            message=('Postgres rejected connection: too many clients already '
                     '(max_connections exceeded). Database is saturated, urgent.'),
            context=context or EventContext(),
        )
    return AlertEvent(
        kind=AlertKind.CONNECT_FAILURE,
        message=('pgwd could not connect to Postgres. Check database URL, connectivity, '
                 'credentials, or infrastructure.'),
        context=context or EventContext(),
    )
