"""
Clock Engine
============

Measures SLA clock time for a ticket from its status-change log.

Two independent clocks share one interval reconstruction:

- response: creation until the first agent response
- resolution: creation until the ticket reaches a terminal status

Time spent in a status whose policy has ``is_paused`` set counts as paused;
every other status (including statuses with no policy) counts as active.
All arithmetic is raw wall-clock minutes.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sla_engine.config import ClockType
from sla_engine.core.exceptions import DomainException
from sla_engine.sla.domain.entities import (
    StatusChange,
    StatusInterval,
    StatusTimeoutPolicy,
    TicketSnapshot,
    as_utc,
    minutes_between,
)
from sla_engine.sla.domain.resolver import ResolveResult, ResolvedSla, RuleMatch
from sla_engine.sla.domain.value_objects import CatalogSnapshot


@dataclass(frozen=True)
class ClockResult:
    """State of one SLA clock at ``now``."""

    clock_type: str
    sla_definition_id: str
    sla_rule_id: int
    target_minutes: float
    active_minutes: float
    paused_minutes: float
    remaining_minutes: float
    is_breached: bool
    projected_breach_at: Optional[datetime] = None
    breached_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self.stopped_at is None

    @property
    def elapsed_minutes(self) -> float:
        return self.active_minutes + self.paused_minutes

    @property
    def overdue_minutes(self) -> float:
        return max(0.0, -self.remaining_minutes)


@dataclass(frozen=True)
class StatusTimeoutResult:
    """Active time spent in the current status against that status's limit."""

    sla_definition_id: str
    status: str
    timeout_minutes: int
    entered_at: datetime
    minutes_in_status: float
    is_exceeded: bool

    @property
    def overdue_minutes(self) -> float:
        return max(0.0, self.minutes_in_status - self.timeout_minutes)


@dataclass(frozen=True)
class TicketClock:
    """Both clocks of one ticket, plus the current-status timeout check."""

    tenant_id: str
    ticket_id: str
    computed_at: datetime
    current_status: str
    is_terminal: bool
    intervals: Tuple[StatusInterval, ...]
    response: Optional[ClockResult] = None
    resolution: Optional[ClockResult] = None
    status_timeout: Optional[StatusTimeoutResult] = None

    @property
    def current(self) -> Optional[ClockResult]:
        """Response clock until the first response, resolution clock afterwards."""
        if self.response is not None and self.response.is_running:
            return self.response
        return self.resolution or self.response

    @property
    def clocks(self) -> List[ClockResult]:
        return [c for c in (self.response, self.resolution) if c is not None]

    @property
    def applicable(self) -> bool:
        """False when no SLA rule matched the ticket."""
        return bool(self.clocks)


def build_intervals(
    created_at: datetime,
    initial_status: Optional[str],
    history: Iterable[StatusChange],
    now: datetime,
) -> List[StatusInterval]:
    """
    Rebuild the status timeline from the change log.

    The result partitions ``[created_at, now]`` with no gaps or overlaps:
    changes are sorted (stable) by time, changes before creation are clamped
    to it, changes after ``now`` are ignored and consecutive duplicates merge.
    The time before the first change belongs to the initial status. The last
    interval is open (``exited_at`` is None) and runs until ``now``.
    """
    created_at = as_utc(created_at)
    now = as_utc(now)
    changes = sorted(history, key=lambda c: as_utc(c.entered_at))

    start_status = initial_status or (changes[0].status if changes else None)
    if start_status is None:
        raise DomainException("Cannot rebuild status intervals without an initial status")

    points: List[Tuple[str, datetime]] = [(start_status, created_at)]
    for change in changes:
        entered_at = max(as_utc(change.entered_at), created_at)
        if entered_at > now:
            break
        if change.status == points[-1][0]:
            continue
        if entered_at == points[-1][1]:
            # Zero-length interval: the later change replaces it
            points[-1] = (change.status, entered_at)
            if len(points) > 1 and points[-2][0] == change.status:
                points.pop()
            continue
        points.append((change.status, entered_at))

    intervals = []
    for index, (status, entered_at) in enumerate(points):
        exited_at = points[index + 1][1] if index + 1 < len(points) else None
        intervals.append(StatusInterval(status=status, entered_at=entered_at, exited_at=exited_at))
    return intervals


class ClockEngine:
    """
    Pure clock computation.

    Args:
        terminal_statuses: Statuses that stop the resolution clock
    """

    def __init__(self, terminal_statuses: Sequence[str] = ("resolved", "closed")):
        self._terminal_statuses = frozenset(terminal_statuses)

    def is_terminal(self, status: str) -> bool:
        return status in self._terminal_statuses

    def compute_clock(
        self,
        tenant_id: str,
        ticket: TicketSnapshot,
        resolved: ResolveResult,
        status_history: Sequence[StatusChange],
        now: datetime,
        catalog: CatalogSnapshot,
    ) -> TicketClock:
        """
        Compute both clocks for a ticket at ``now``.

        Args:
            tenant_id: Tenant the caller is acting for
            ticket: Ticket snapshot (creation time, response/resolution stamps)
            resolved: Resolver output; NOT_APPLICABLE yields a clock with no SLA
            status_history: The ticket's status-change log
            now: Evaluation instant
            catalog: Catalog supplying the status pause/timeout policies

        Returns:
            TicketClock
        """
        if tenant_id != ticket.tenant_id:
            raise DomainException(
                "Tenant mismatch while computing clock",
                {"tenant_id": tenant_id, "ticket_id": ticket.id}
            )

        now = as_utc(now)
        intervals = build_intervals(
            ticket.created_at, ticket.initial_status or ticket.status, status_history, now
        )
        current_status = intervals[-1].status
        terminal_at = self._terminal_at(ticket, intervals)

        if not isinstance(resolved, ResolvedSla):
            return TicketClock(
                tenant_id=tenant_id,
                ticket_id=ticket.id,
                computed_at=now,
                current_status=current_status,
                is_terminal=terminal_at is not None,
                intervals=tuple(intervals),
            )

        # A ticket closed without a response stops its response clock too
        stops = [t for t in (ticket.first_response_at, terminal_at) if t is not None]
        response_stop = min(stops) if stops else None

        response = self._run_clock(
            ClockType.RESPONSE, resolved.response, intervals, ticket.created_at,
            response_stop, now, catalog
        )
        resolution = self._run_clock(
            ClockType.RESOLUTION, resolved.resolution, intervals, ticket.created_at,
            terminal_at, now, catalog
        )

        timeout_owner = resolved.resolution or resolved.response
        status_timeout = None
        if terminal_at is None and timeout_owner is not None:
            status_timeout = self._status_timeout(
                intervals[-1], catalog.policies_for(timeout_owner.definition.id),
                timeout_owner.definition.id, now
            )

        return TicketClock(
            tenant_id=tenant_id,
            ticket_id=ticket.id,
            computed_at=now,
            current_status=current_status,
            is_terminal=terminal_at is not None,
            intervals=tuple(intervals),
            response=response,
            resolution=resolution,
            status_timeout=status_timeout,
        )

    # ========== Internals ==========

    def _terminal_at(
        self, ticket: TicketSnapshot, intervals: List[StatusInterval]
    ) -> Optional[datetime]:
        """When the ticket became terminal, or None while it is open."""
        if not self.is_terminal(intervals[-1].status) and not self.is_terminal(ticket.status):
            return None
        if ticket.resolved_at is not None:
            return max(ticket.resolved_at, ticket.created_at)
        return intervals[-1].entered_at

    @staticmethod
    def _is_paused(policies: Dict[str, StatusTimeoutPolicy], status: str) -> bool:
        policy = policies.get(status)
        # No policy means the clock keeps running
        return bool(policy and policy.is_paused)

    def _run_clock(
        self,
        clock_type: str,
        winner: Optional[RuleMatch],
        intervals: List[StatusInterval],
        created_at: datetime,
        stop_at: Optional[datetime],
        now: datetime,
        catalog: CatalogSnapshot,
    ) -> Optional[ClockResult]:
        if winner is None:
            return None
        target = winner.definition.target_for(clock_type)
        if target is None:
            return None

        policies = catalog.policies_for(winner.definition.id)
        stopped_at = stop_at if stop_at is not None and stop_at <= now else None
        end = stopped_at or now

        active = 0.0
        paused = 0.0
        active_before_last = 0.0
        breached_at = None
        for interval in intervals:
            if interval is intervals[-1]:
                active_before_last = active
            seg_start = interval.entered_at
            seg_end = min(interval.exited_at or end, end)
            if seg_end <= seg_start:
                continue
            minutes = minutes_between(seg_start, seg_end)
            if self._is_paused(policies, interval.status):
                paused += minutes
                continue
            if breached_at is None and active + minutes >= target:
                breached_at = seg_start + timedelta(minutes=target - active)
            active += minutes

        remaining = target - active
        is_breached = remaining <= 0

        projected = None
        if stopped_at is None and not self._is_paused(policies, intervals[-1].status):
            if is_breached:
                projected = breached_at
            else:
                projected = intervals[-1].entered_at + timedelta(minutes=target - active_before_last)

        return ClockResult(
            clock_type=clock_type,
            sla_definition_id=winner.definition.id,
            sla_rule_id=winner.rule.id,
            target_minutes=float(target),
            active_minutes=active,
            paused_minutes=paused,
            remaining_minutes=remaining,
            is_breached=is_breached,
            projected_breach_at=projected,
            breached_at=breached_at,
            stopped_at=stopped_at,
        )

    def _status_timeout(
        self,
        current: StatusInterval,
        policies: Dict[str, StatusTimeoutPolicy],
        definition_id: str,
        now: datetime,
    ) -> Optional[StatusTimeoutResult]:
        policy = policies.get(current.status)
        if policy is None or policy.timeout_minutes is None:
            return None
        # Paused statuses accrue no active time
        minutes = 0.0 if policy.is_paused else max(0.0, minutes_between(current.entered_at, now))
        return StatusTimeoutResult(
            sla_definition_id=definition_id,
            status=current.status,
            timeout_minutes=policy.timeout_minutes,
            entered_at=current.entered_at,
            minutes_in_status=minutes,
            is_exceeded=minutes > policy.timeout_minutes,
        )
