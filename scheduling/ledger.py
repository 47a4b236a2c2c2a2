"""
Resource Scheduler: Resource Pools & Reservation Ledger

Pools are bounded integer counters of one resource kind. The ledger is
the only component allowed to move a pool's ``allocated`` counter: all
capacity changes go through reserve / release / sweep.

Reservation lifecycle:
    granted → released   (owner finished, was cancelled, or caller released)
    granted → reclaimed  (forced release for a strictly higher priority request)
    granted → expired    (TTL sweep; safety net for leaked reservations)

Invariant, checked by ``check_invariants()``:
    for every pool: 0 <= allocated <= capacity
                    allocated == sum(amount of active reservations on the pool)
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from scheduling.errors import InsufficientCapacity, UnknownPool
from scheduling.events import EventSink, EventType, SchedulerEvent, make_event, null_sink
from scheduling.types import Priority, ResourceKind, ResourceRequirement, new_id

logger = logging.getLogger("resource_scheduler.ledger")


# ═══════════════════════════════════════════════════════════════════
# Pools and Reservations
# ═══════════════════════════════════════════════════════════════════

@dataclass
class ResourcePool:
    """Capacity and allocation for one resource kind."""
    pool_id: str
    kind: ResourceKind
    capacity: int
    allocated: int = 0

    def __post_init__(self):
        self.kind = ResourceKind(self.kind)
        if not isinstance(self.capacity, int) or isinstance(self.capacity, bool):
            raise ValueError(f"Pool {self.pool_id!r}: capacity must be an integer")
        if self.capacity < 0:
            raise ValueError(f"Pool {self.pool_id!r}: capacity must be >= 0")

    @property
    def available(self) -> int:
        return self.capacity - self.allocated

    @property
    def utilization_pct(self) -> float:
        return self.allocated / max(1, self.capacity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "kind": self.kind.value,
            "capacity": self.capacity,
            "allocated": self.allocated,
            "available": self.available,
        }


@dataclass
class Reservation:
    """A granted, time-bounded claim on part of a pool."""
    reservation_id: str
    pool_id: str
    amount: int
    priority: Priority
    expires_at: float
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0

    @property
    def owner(self) -> str:
        """Task id owning this reservation ("" when reserved directly)."""
        return self.metadata.get("task_id", "")

    @property
    def correlation_id(self) -> str:
        return self.metadata.get("correlation_id") or self.owner or self.reservation_id

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "reservation_id": self.reservation_id,
            "pool_id": self.pool_id,
            "amount": self.amount,
            "priority": self.priority.value,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
            "metadata": dict(self.metadata),
        }


@dataclass
class ReservationGrant:
    """Result of an all-or-nothing reservation request."""
    reservation_ids: list[str]
    reclaimed: list[Reservation] = field(default_factory=list)

    @property
    def reclaimed_owners(self) -> list[str]:
        """Distinct task ids that lost a reservation to this grant."""
        seen: list[str] = []
        for rsv in self.reclaimed:
            if rsv.owner and rsv.owner not in seen:
                seen.append(rsv.owner)
        return seen


# ═══════════════════════════════════════════════════════════════════
# Ledger
# ═══════════════════════════════════════════════════════════════════

class ReservationLedger:
    """
    Active reservations across all pools.

    One lock serializes every check-then-update on pool counters. A
    single lock (rather than one per pool) is what lets ``reserve_all``
    plan and grant across several pools atomically.
    """

    def __init__(
        self,
        pools: Iterable[ResourcePool] | None = None,
        events: EventSink | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self._pools: dict[str, ResourcePool] = {}
        self._reservations: dict[str, Reservation] = {}
        self._lock = threading.Lock()
        self._events = events or null_sink
        self._clock = clock or time.time
        for pool in pools or []:
            self.add_pool(pool)

    # ─── Pools ───────────────────────────────────────────────────

    def add_pool(self, pool: ResourcePool) -> None:
        """Register a pool at startup. Pools are never resized or removed."""
        with self._lock:
            if pool.pool_id in self._pools:
                raise ValueError(f"Pool {pool.pool_id!r} already registered")
            self._pools[pool.pool_id] = pool
        logger.debug("Registered pool %s (%s, capacity=%d)",
                     pool.pool_id, pool.kind.value, pool.capacity)

    def has_pool(self, pool_id: str) -> bool:
        return pool_id in self._pools

    def get_pool(self, pool_id: str) -> ResourcePool:
        pool = self._pools.get(pool_id)
        if pool is None:
            raise UnknownPool(f"Unknown pool {pool_id!r}")
        return pool

    @property
    def pools(self) -> list[ResourcePool]:
        return list(self._pools.values())

    # ─── Reserve ─────────────────────────────────────────────────

    def reserve(
        self,
        pool_id: str,
        amount: int,
        priority: Priority | str,
        ttl: float,
        metadata: dict[str, Any] | None = None,
        now: float | None = None,
    ) -> str:
        """
        Reserve ``amount`` units of one pool. Returns the reservation id.

        Reclaims strictly lower priority reservations when the pool is
        short. Raises InsufficientCapacity if that is still not enough,
        UnknownPool for an unregistered pool.
        """
        grant = self.reserve_all(
            [ResourceRequirement(pool_id, amount)],
            priority, ttl, metadata=metadata, now=now,
        )
        return grant.reservation_ids[0]

    def reserve_all(
        self,
        requirements: Iterable[ResourceRequirement],
        priority: Priority | str,
        ttl: float,
        metadata: dict[str, Any] | None = None,
        now: float | None = None,
    ) -> ReservationGrant:
        """
        All-or-nothing reservation of several requirements.

        Every requirement is planned before anything is reclaimed or
        granted. If any single one cannot be met, the ledger is left
        untouched and InsufficientCapacity names the first short pool.
        """
        priority = Priority.parse(priority)
        requirements = list(requirements)
        now = self._clock() if now is None else now
        metadata = dict(metadata or {})
        requester = metadata.get("task_id", "")

        demand: dict[str, int] = {}
        for req in requirements:
            demand[req.pool_id] = demand.get(req.pool_id, 0) + req.amount

        events: list[SchedulerEvent] = []
        with self._lock:
            for pool_id in demand:
                if pool_id not in self._pools:
                    raise UnknownPool(f"Unknown pool {pool_id!r}")

            # Phase 1: plan
            plan: dict[str, list[Reservation]] = {}
            for pool_id, amount in demand.items():
                pool = self._pools[pool_id]
                shortfall = amount - pool.available
                if shortfall <= 0:
                    plan[pool_id] = []
                    continue
                victims, freed, reclaimable = self._select_victims(
                    pool_id, shortfall, priority, requester,
                )
                if freed < shortfall:
                    raise InsufficientCapacity(
                        pool_id, amount, pool.available, reclaimable,
                    )
                plan[pool_id] = victims

            # Phase 2: reclaim
            reclaimed: list[Reservation] = []
            for victims in plan.values():
                for rsv in victims:
                    self._remove_locked(rsv)
                    reclaimed.append(rsv)
                    events.append(make_event(
                        EventType.RESERVATION_RECLAIMED, rsv.correlation_id, now,
                        reservation_id=rsv.reservation_id,
                        pool_id=rsv.pool_id,
                        amount=rsv.amount,
                        priority=rsv.priority.value,
                        owner=rsv.owner,
                        reclaimed_for=requester,
                        requester_priority=priority.value,
                    ))

            # Phase 3: grant
            granted: list[str] = []
            for req in requirements:
                pool = self._pools[req.pool_id]
                rsv = Reservation(
                    reservation_id=new_id("rsv"),
                    pool_id=req.pool_id,
                    amount=req.amount,
                    priority=priority,
                    expires_at=now + ttl,
                    metadata=dict(metadata),
                    created_at=now,
                )
                pool.allocated += req.amount
                self._reservations[rsv.reservation_id] = rsv
                granted.append(rsv.reservation_id)
                events.append(make_event(
                    EventType.RESERVATION_GRANTED, rsv.correlation_id, now,
                    reservation_id=rsv.reservation_id,
                    pool_id=rsv.pool_id,
                    amount=rsv.amount,
                    priority=priority.value,
                    owner=rsv.owner,
                    expires_at=rsv.expires_at,
                ))

        if reclaimed:
            logger.info("Reclaimed %d reservation(s) for %s (%s)",
                        len(reclaimed), requester or "direct request", priority.value)
        self._emit(events)
        return ReservationGrant(reservation_ids=granted, reclaimed=reclaimed)

    def _select_victims(
        self,
        pool_id: str,
        shortfall: int,
        priority: Priority,
        requester: str,
    ) -> tuple[list[Reservation], int, int]:
        """
        Choose reservations to reclaim on one pool.

        Candidates are strictly lower priority than the requester and not
        owned by it, ordered lowest priority first, then earliest expiry.
        Returns (victims, freed by victims, total reclaimable on the pool).
        """
        candidates = sorted(
            (
                r for r in self._reservations.values()
                if r.pool_id == pool_id
                and r.priority.rank < priority.rank
                and not (requester and r.owner == requester)
            ),
            key=lambda r: (r.priority.rank, r.expires_at, r.created_at),
        )
        reclaimable = sum(r.amount for r in candidates)
        victims: list[Reservation] = []
        freed = 0
        for rsv in candidates:
            if freed >= shortfall:
                break
            victims.append(rsv)
            freed += rsv.amount
        return victims, freed, reclaimable

    # ─── Release ─────────────────────────────────────────────────

    def release(self, reservation_id: str, now: float | None = None) -> int:
        """
        Release a reservation. Idempotent: unknown or already released
        ids are a no-op. Returns the amount returned to the pool.
        """
        with self._lock:
            rsv = self._reservations.get(reservation_id)
            if rsv is None:
                return 0
            self._remove_locked(rsv)
        self._emit([self._released_event(rsv, now)])
        return rsv.amount

    def release_owner(self, task_id: str, now: float | None = None) -> list[str]:
        """Release every reservation owned by a task. Returns released ids."""
        with self._lock:
            owned = [r for r in self._reservations.values() if r.owner == task_id]
            for rsv in owned:
                self._remove_locked(rsv)
        self._emit([self._released_event(r, now) for r in owned])
        return [r.reservation_id for r in owned]

    def sweep_expired(self, now: float | None = None) -> list[Reservation]:
        """
        Force-release every reservation past its expiry.

        Returns the released reservations; ``len()`` is the released count.
        Owners are reported through ``reservation.expired`` events and the
        returned records so the scheduler can fail or retry them.
        """
        now = self._clock() if now is None else now
        with self._lock:
            expired = [r for r in self._reservations.values() if r.is_expired(now)]
            for rsv in expired:
                self._remove_locked(rsv)
        if expired:
            logger.warning("Swept %d expired reservation(s)", len(expired))
        self._emit([
            make_event(
                EventType.RESERVATION_EXPIRED, rsv.correlation_id, now,
                reservation_id=rsv.reservation_id,
                pool_id=rsv.pool_id,
                amount=rsv.amount,
                owner=rsv.owner,
                expired_at=rsv.expires_at,
            )
            for rsv in expired
        ])
        return expired

    def _remove_locked(self, rsv: Reservation) -> None:
        del self._reservations[rsv.reservation_id]
        self._pools[rsv.pool_id].allocated -= rsv.amount

    def _released_event(self, rsv: Reservation, now: float | None) -> SchedulerEvent:
        return make_event(
            EventType.RESERVATION_RELEASED, rsv.correlation_id,
            self._clock() if now is None else now,
            reservation_id=rsv.reservation_id,
            pool_id=rsv.pool_id,
            amount=rsv.amount,
            owner=rsv.owner,
        )

    def _emit(self, events: list[SchedulerEvent]) -> None:
        for event in events:
            self._events(event)

    # ─── Queries ─────────────────────────────────────────────────

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        with self._lock:
            return self._reservations.get(reservation_id)

    def reservations(
        self,
        pool_id: str | None = None,
        owner: str | None = None,
    ) -> list[Reservation]:
        with self._lock:
            results = list(self._reservations.values())
        if pool_id:
            results = [r for r in results if r.pool_id == pool_id]
        if owner:
            results = [r for r in results if r.owner == owner]
        return results

    @property
    def reservation_count(self) -> int:
        with self._lock:
            return len(self._reservations)

    def check_invariants(self) -> list[str]:
        """Return capacity invariant violations (empty when consistent)."""
        violations = []
        with self._lock:
            for pool in self._pools.values():
                held = sum(r.amount for r in self._reservations.values()
                           if r.pool_id == pool.pool_id)
                if held != pool.allocated:
                    violations.append(
                        f"{pool.pool_id}: allocated={pool.allocated} "
                        f"but reservations hold {held}"
                    )
                if not 0 <= pool.allocated <= pool.capacity:
                    violations.append(
                        f"{pool.pool_id}: allocated={pool.allocated} "
                        f"outside [0, {pool.capacity}]"
                    )
        return violations

    def utilization(self) -> dict[str, float]:
        with self._lock:
            return {p.pool_id: p.utilization_pct for p in self._pools.values()}

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "pools": [p.to_dict() for p in self._pools.values()],
                "reservations": [r.to_dict() for r in self._reservations.values()],
            }
