"""
In-memory stand-ins for the PostgreSQL unit of work and its repositories.

Same method names and error behaviour as the real ones. Writes go straight to
the shared store and are journaled, so a unit of work that exits with an
exception undoes exactly its own writes. Advisory locks are per-key
asyncio.Locks, re-entrant within one unit of work like pg_advisory_xact_lock.
"""
import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID, uuid4

from subscription_ledger.exceptions import ConflictError, DatabaseError, InvariantViolationError, NotFoundError
from subscription_ledger.models.plan import Plan, PlanCreate, PLAN_EDITABLE_FIELDS
from subscription_ledger.models.subscription import Subscription, SubscriptionStatus, OPEN_STATUSES

_MISSING = object()
_EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


class _Journal:
    def __init__(self):
        self._undo = []

    def set(self, mapping: dict, key, value):
        self._undo.append((mapping, key, mapping.get(key, _MISSING)))
        mapping[key] = value

    def append(self, seq: list, item):
        seq.append(item)
        self._undo.append((seq, None, item))

    def rollback(self):
        for target, key, old in reversed(self._undo):
            if isinstance(target, list):
                target.remove(old)
            elif old is _MISSING:
                target.pop(key, None)
            else:
                target[key] = old
        self._undo.clear()


class InMemoryStore:
    def __init__(self):
        self.plans: dict[UUID, Plan] = {}
        self.subscriptions: dict[UUID, Subscription] = {}
        self.history: list = []
        self.payments: dict[str, object] = {}
        self.profiles: dict[UUID, tuple] = {}
        self.forms: dict[UUID, dict] = {}
        self.submissions: dict[UUID, int] = {}
        self.exports: dict[tuple, int] = {}
        self.locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.fail_history_writes = False
        self.fail_updates_for: set[UUID] = set()
        self.commits = 0
        self.rollbacks = 0
        self._ticks = 0

    def tick(self) -> datetime:
        """Strictly increasing row timestamps."""
        self._ticks += 1
        return _EPOCH + timedelta(microseconds=self._ticks)

    # seeding helpers

    def add_plan(self, plan: PlanCreate) -> Plan:
        stored = Plan(**plan.model_dump())
        self.plans[stored.id] = stored
        return stored

    def add_form(self, user_id: UUID, title: str = "form", submissions: int = 0) -> UUID:
        form_id = uuid4()
        self.forms[form_id] = {"user_id": user_id, "title": title, "created": self.tick()}
        self.submissions[form_id] = submissions
        return form_id

    def add_exports(self, resource_type: str, resource_id: UUID, count: int) -> None:
        self.exports[(resource_type, resource_id)] = self.exports.get((resource_type, resource_id), 0) + count

    def history_for(self, subscription_id: UUID) -> list:
        return [h for h in self.history if h.subscription_id == subscription_id]


class FakePlanRepository:
    def __init__(self, store: InMemoryStore, journal: _Journal):
        self._store = store
        self._journal = journal

    async def get(self, plan_id):
        plan = self._store.plans.get(plan_id)
        return plan.model_copy(deep=True) if plan else None

    async def get_by_name(self, name):
        for plan in self._store.plans.values():
            if plan.name == name:
                return plan.model_copy(deep=True)
        return None

    async def get_default(self):
        for plan in self._store.plans.values():
            if plan.is_default and plan.is_active:
                return plan.model_copy(deep=True)
        return None

    async def list(self, include_inactive=False):
        plans = [p for p in self._store.plans.values() if include_inactive or p.is_active]
        return [p.model_copy(deep=True) for p in sorted(plans, key=lambda p: (p.price_monthly, p.name))]

    async def insert(self, plan: PlanCreate):
        if await self.get_by_name(plan.name) is not None:
            raise ConflictError(f"Plan '{plan.name}' already exists.")
        if plan.is_default:
            self._clear_default()
        stored = Plan(**plan.model_dump())
        self._journal.set(self._store.plans, stored.id, stored)
        return stored.model_copy(deep=True)

    async def update(self, plan_id, patch):
        unknown = set(patch) - PLAN_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable on a plan: {sorted(unknown)}")
        plan = self._store.plans.get(plan_id)
        if plan is None:
            return None
        updated = plan.model_copy(update=patch)
        self._journal.set(self._store.plans, plan_id, updated)
        return updated.model_copy(deep=True)

    async def set_default(self, plan_id):
        plan = self._store.plans.get(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found.")
        if not plan.is_active:
            raise InvariantViolationError(f"Archived plan '{plan.name}' cannot be the default.")
        self._clear_default()
        updated = self._store.plans[plan_id].model_copy(update={"is_default": True})
        self._journal.set(self._store.plans, plan_id, updated)
        return updated.model_copy(deep=True)

    async def is_referenced(self, plan_id):
        if any(s.plan_id == plan_id for s in self._store.subscriptions.values()):
            return True
        return any(p[0] == plan_id for p in self._store.profiles.values())

    async def delete(self, plan_id):
        plan = self._store.plans.get(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found.")
        if plan.is_default:
            raise InvariantViolationError("Cannot delete the default plan.", {"plan_id": str(plan_id)})
        if await self.is_referenced(plan_id):
            raise InvariantViolationError(f"Cannot delete plan '{plan.name}': it is referenced by subscriptions.")
        self._journal.set(self._store.plans, plan_id, _MISSING)
        del self._store.plans[plan_id]

    def _clear_default(self):
        for plan_id, plan in list(self._store.plans.items()):
            if plan.is_default:
                self._journal.set(self._store.plans, plan_id, plan.model_copy(update={"is_default": False}))


class FakeSubscriptionRepository:
    def __init__(self, store: InMemoryStore, journal: _Journal):
        self._store = store
        self._journal = journal

    async def get(self, subscription_id):
        sub = self._store.subscriptions.get(subscription_id)
        return sub.model_copy(deep=True) if sub else None

    async def get_for_update(self, subscription_id):
        # A real round trip suspends here; let other tasks interleave.
        await asyncio.sleep(0)
        return await self.get(subscription_id)

    async def find_open_for_user(self, user_id):
        await asyncio.sleep(0)
        subs = [s for s in self._store.subscriptions.values() if s.user_id == user_id and s.status in OPEN_STATUSES]
        return [s.model_copy(deep=True) for s in sorted(subs, key=lambda s: s.created_at, reverse=True)]

    async def find_active_for_user(self, user_id):
        return await self.find_latest_for_user(user_id, SubscriptionStatus.active)

    async def find_latest_for_user(self, user_id, status=None):
        subs = [
            s for s in self._store.subscriptions.values()
            if s.user_id == user_id and (status is None or s.status == status)
        ]
        if not subs:
            return None
        return max(subs, key=lambda s: s.created_at).model_copy(deep=True)

    async def find_by_provider_subscription_id(self, provider, provider_subscription_id):
        subs = [
            s for s in self._store.subscriptions.values()
            if s.payment_provider == provider and s.provider_subscription_id == provider_subscription_id
        ]
        if not subs:
            return None
        return max(subs, key=lambda s: s.created_at).model_copy(deep=True)

    async def list_for_user(self, user_id):
        subs = [s for s in self._store.subscriptions.values() if s.user_id == user_id]
        return [s.model_copy(deep=True) for s in sorted(subs, key=lambda s: s.created_at, reverse=True)]

    async def find_expirable(self, now):
        return [
            s.id for s in self._store.subscriptions.values()
            if s.status == SubscriptionStatus.active and s.end_date is not None
            and s.end_date < now and not s.auto_renew
        ]

    async def count_for_plan(self, plan_id):
        return sum(1 for s in self._store.subscriptions.values() if s.plan_id == plan_id)

    async def insert(self, sub: Subscription):
        self._check_single_open(sub)
        stamp = self._store.tick()
        stored = sub.model_copy(update={"created_at": stamp, "updated_at": stamp}, deep=True)
        self._journal.set(self._store.subscriptions, stored.id, stored)
        return stored.model_copy(deep=True)

    async def update(self, sub: Subscription):
        current = self._store.subscriptions.get(sub.id)
        if current is None:
            raise NotFoundError(f"Subscription {sub.id} not found.")
        if sub.id in self._store.fail_updates_for:
            raise DatabaseError(f"Failed to update subscription {sub.id}: simulated outage")
        self._check_single_open(sub)
        stored = sub.model_copy(update={"created_at": current.created_at, "updated_at": self._store.tick()}, deep=True)
        self._journal.set(self._store.subscriptions, stored.id, stored)
        return stored.model_copy(deep=True)

    def _check_single_open(self, sub: Subscription):
        # Mirrors the partial unique index on (user_id) WHERE status IN ('pending', 'active').
        if sub.status not in OPEN_STATUSES:
            return
        for other in self._store.subscriptions.values():
            if other.id != sub.id and other.user_id == sub.user_id and other.status in OPEN_STATUSES:
                raise ConflictError("User already has a pending or active subscription.", {"user_id": str(sub.user_id)})


class FakeHistoryRepository:
    def __init__(self, store: InMemoryStore, journal: _Journal):
        self._store = store
        self._journal = journal

    async def append(self, entry):
        if self._store.fail_history_writes:
            raise DatabaseError("Failed to write history: simulated outage")
        stored = entry.model_copy(update={"created_at": self._store.tick()}, deep=True)
        self._journal.append(self._store.history, stored)

    async def list_for_subscription(self, subscription_id):
        return [h.model_copy(deep=True) for h in self._store.history if h.subscription_id == subscription_id]

    async def list_for_user(self, user_id, limit=50, offset=0):
        rows = [h for h in reversed(self._store.history) if h.user_id == user_id]
        return [h.model_copy(deep=True) for h in rows[offset:offset + limit]]


class FakePaymentRepository:
    def __init__(self, store: InMemoryStore, journal: _Journal):
        self._store = store
        self._journal = journal

    async def find_by_webhook_event_id(self, webhook_event_id):
        tx = self._store.payments.get(webhook_event_id)
        return tx.model_copy(deep=True) if tx else None

    async def insert(self, tx):
        if tx.webhook_event_id in self._store.payments:
            raise ConflictError(
                f"Webhook event {tx.webhook_event_id} already recorded.",
                {"webhook_event_id": tx.webhook_event_id},
            )
        stored = tx.model_copy(update={"created_at": self._store.tick()}, deep=True)
        self._journal.set(self._store.payments, tx.webhook_event_id, stored)
        return stored.model_copy(deep=True)

    async def list_for_subscription(self, subscription_id):
        return [t for t in self._store.payments.values() if t.subscription_id == subscription_id]

    async def list_for_user(self, user_id, limit=50, offset=0):
        rows = [t for t in self._store.payments.values() if t.user_id == user_id]
        rows.sort(key=lambda t: t.created_at, reverse=True)
        return rows[offset:offset + limit]


class FakeUsageRepository:
    def __init__(self, store: InMemoryStore, journal: _Journal):
        self._store = store
        self._journal = journal

    async def get_governing_plan_id(self, user_id):
        profile = self._store.profiles.get(user_id)
        return profile[0] if profile else None

    async def set_governing_plan(self, user_id, plan_id, subscription_id):
        self._journal.set(self._store.profiles, user_id, (plan_id, subscription_id))

    async def reset_to_default(self, user_id, subscription_id: Optional[UUID] = None):
        profile = self._store.profiles.get(user_id)
        if subscription_id is not None and (profile is None or profile[1] != subscription_id):
            return
        self._journal.set(self._store.profiles, user_id, (None, None))

    async def count_forms(self, user_id):
        return sum(1 for f in self._store.forms.values() if f["user_id"] == user_id)

    async def count_submissions(self, form_id):
        return self._store.submissions.get(form_id, 0)

    async def count_exports(self, resource_type, resource_id):
        return self._store.exports.get((resource_type, resource_id), 0)

    async def submission_counts_by_form(self, user_id):
        forms = sorted(
            ((fid, f) for fid, f in self._store.forms.items() if f["user_id"] == user_id),
            key=lambda item: item[1]["created"],
        )
        return [(fid, f["title"], self._store.submissions.get(fid, 0)) for fid, f in forms]


class FakeUnitOfWork:
    def __init__(self, store: InMemoryStore):
        self._store = store
        self._events: list = []

    async def __aenter__(self):
        self._journal = _Journal()
        self._held: dict[str, asyncio.Lock] = {}
        self._events = []
        self.plans = FakePlanRepository(self._store, self._journal)
        self.subscriptions = FakeSubscriptionRepository(self._store, self._journal)
        self.history = FakeHistoryRepository(self._store, self._journal)
        self.payments = FakePaymentRepository(self._store, self._journal)
        self.usage = FakeUsageRepository(self._store, self._journal)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        try:
            if exc:
                self._journal.rollback()
                self._events = []
                self._store.rollbacks += 1
            else:
                self._store.commits += 1
        finally:
            for lock in reversed(list(self._held.values())):
                lock.release()
            self._held = {}

    async def lock(self, key):
        if not key or key in self._held:
            return
        lock = self._store.locks[key]
        await lock.acquire()
        self._held[key] = lock

    async def lock_subscription(self, subscription_id):
        await self.lock(f"subscription:{subscription_id}")

    async def lock_user(self, user_id):
        await self.lock(f"user:{user_id}")

    async def lock_event(self, provider, event_id):
        await self.lock(f"webhook:{provider}:{event_id}")

    def record_event(self, event):
        self._events.append(event)

    def collect_events(self):
        events, self._events = self._events, []
        return events
