"""
Tests for the subscription lifecycle.

Covers:
- Calendar-month plan boundaries with clamping
- Creation defaults, validation errors and superseding
- Idempotent expiry sweep
- Class consumption, cancellation and top-up
"""

from __future__ import annotations

import uuid
from datetime import date

import pytest
from sqlmodel import select

from app.core.errors import InputError, NotFoundError, StateError, StoreConflict
from app.models.subscription import Subscription
from app.services.subscriptions import (
    add_classes,
    add_months,
    cancel_subscription,
    claim_visit,
    consume_one_class,
    create_subscription,
    current_subscription,
    due_for_expiry,
    parse_plan_kind,
    plan_window,
    run_expiry_sweep,
    validity_problem,
)
from atom_shared.schemas.common import PlanKind

from conftest import NOW


# ---------------------------------------------------------------------------
# Unit Tests: plan arithmetic
# ---------------------------------------------------------------------------

class TestPlanArithmetic:
    @pytest.mark.parametrize(
        "start, months, expected",
        [
            (date(2024, 1, 31), 1, date(2024, 2, 29)),
            (date(2023, 1, 31), 1, date(2023, 2, 28)),
            (date(2024, 3, 1), 1, date(2024, 4, 1)),
            (date(2024, 11, 30), 3, date(2025, 2, 28)),
            (date(2024, 2, 29), 12, date(2025, 2, 28)),
        ],
    )
    def test_add_months_clamps_to_month_end(self, start, months, expected):
        assert add_months(start, months) == expected

    def test_time_bounded_windows(self):
        start = date(2024, 1, 31)
        assert plan_window(PlanKind.MONTHLY, start) == (date(2024, 2, 29), None)
        assert plan_window(PlanKind.QUARTERLY, start) == (date(2024, 4, 30), None)
        assert plan_window(PlanKind.YEARLY, start) == (date(2025, 1, 31), None)

    def test_pay_per_class_defaults_to_ten(self):
        assert plan_window(PlanKind.PAY_PER_CLASS, date(2024, 1, 1)) == (None, 10)

    def test_pay_per_class_keeps_explicit_count_and_no_end(self):
        assert plan_window(PlanKind.PAY_PER_CLASS, date(2024, 1, 1), remaining_classes=3) == (None, 3)

    def test_end_date_on_pack_rejected(self):
        with pytest.raises(InputError) as exc:
            plan_window(
                PlanKind.PAY_PER_CLASS, date(2024, 1, 1), end_date=date(2024, 6, 1), remaining_classes=3
            )
        assert exc.value.code == "INVALID_INPUT"

    def test_class_count_on_time_bounded_plan_rejected(self):
        with pytest.raises(InputError) as exc:
            plan_window(PlanKind.MONTHLY, date(2024, 1, 1), remaining_classes=5)
        assert exc.value.code == "INVALID_INPUT"

    def test_explicit_end_before_start_rejected(self):
        with pytest.raises(InputError) as exc:
            plan_window(PlanKind.MONTHLY, date(2024, 3, 1), end_date=date(2024, 2, 1))
        assert exc.value.code == "INVALID_INPUT"

    def test_zero_classes_rejected(self):
        with pytest.raises(InputError):
            plan_window(PlanKind.PAY_PER_CLASS, date(2024, 3, 1), remaining_classes=0)

    @pytest.mark.parametrize("value", ["weekly", "", None, "MONTHLY"])
    def test_unknown_plan_kind(self, value):
        with pytest.raises(InputError) as exc:
            parse_plan_kind(value)
        assert exc.value.code == "INVALID_PLAN"
        assert exc.value.status_code == 400


class TestValidity:
    def _sub(self, **kw) -> Subscription:
        defaults = dict(
            member_id=uuid.uuid4(),
            plan_kind="monthly",
            status="active",
            start_date=date(2024, 3, 1),
            end_date=date(2024, 4, 1),
        )
        defaults.update(kw)
        return Subscription(**defaults)

    def test_active_within_window(self):
        assert validity_problem(self._sub(), date(2024, 4, 1)) is None

    def test_past_end_date(self):
        assert validity_problem(self._sub(), date(2024, 4, 2)) == "expired"

    def test_before_start(self):
        assert validity_problem(self._sub(), date(2024, 2, 29)) == "not_started"

    def test_terminal_status_reported(self):
        assert validity_problem(self._sub(status="canceled"), date(2024, 3, 5)) == "canceled"

    def test_pack_without_classes(self):
        sub = self._sub(plan_kind="pay_per_class", end_date=None, remaining_classes=0)
        assert validity_problem(sub, date(2024, 3, 5)) == "no_classes_left"
        assert due_for_expiry(sub, date(2024, 3, 5))


# ---------------------------------------------------------------------------
# Integration Tests: creation
# ---------------------------------------------------------------------------

class TestCreateSubscription:
    @pytest.mark.asyncio
    async def test_monthly_defaults_to_today(self, session, make_profile):
        member = await make_profile()
        sub = await create_subscription(session, member.id, "monthly", today=date(2024, 1, 31))
        assert sub.status == "active"
        assert sub.start_date == date(2024, 1, 31)
        assert sub.end_date == date(2024, 2, 29)
        assert sub.remaining_classes is None
        assert sub.version == 1

    @pytest.mark.asyncio
    async def test_pay_per_class_defaults(self, session, make_profile):
        member = await make_profile()
        sub = await create_subscription(session, member.id, "pay_per_class", today=date(2024, 3, 1))
        assert sub.end_date is None
        assert sub.remaining_classes == 10
        assert sub.class_grants == 1

    @pytest.mark.asyncio
    async def test_missing_member(self, session):
        with pytest.raises(InputError) as exc:
            await create_subscription(session, None, "monthly", today=date(2024, 3, 1))
        assert exc.value.code == "MISSING_MEMBER"

    @pytest.mark.asyncio
    async def test_unknown_member(self, session):
        with pytest.raises(NotFoundError) as exc:
            await create_subscription(session, uuid.uuid4(), "monthly", today=date(2024, 3, 1))
        assert exc.value.code == "UNKNOWN_MEMBER"

    @pytest.mark.asyncio
    async def test_invalid_plan_checked_before_member_lookup(self, session):
        with pytest.raises(InputError) as exc:
            await create_subscription(session, uuid.uuid4(), "lifetime", today=date(2024, 3, 1))
        assert exc.value.code == "INVALID_PLAN"

    @pytest.mark.asyncio
    async def test_new_subscription_supersedes_active_one(self, session, make_profile):
        member = await make_profile()
        first = await create_subscription(session, member.id, "monthly", today=date(2024, 3, 1))
        second = await create_subscription(
            session, member.id, "pay_per_class", today=date(2024, 3, 5), now=NOW
        )
        await session.commit()

        await session.refresh(first)
        assert first.status == "canceled"
        assert first.canceled_at is not None
        assert second.status == "active"

        result = await session.execute(
            select(Subscription).where(
                Subscription.member_id == member.id, Subscription.status == "active"
            )
        )
        assert [s.id for s in result.scalars().all()] == [second.id]

    @pytest.mark.asyncio
    async def test_early_renewal_keeps_member_covered(self, session, make_profile):
        member = await make_profile()
        first = await create_subscription(session, member.id, "monthly", today=date(2024, 3, 1))
        assert first.end_date == date(2024, 4, 1)

        renewal = await create_subscription(
            session, member.id, "monthly", today=date(2024, 3, 20), start_date=date(2024, 4, 2), now=NOW
        )
        await session.commit()

        assert renewal.start_date == date(2024, 3, 20)
        assert renewal.end_date == date(2024, 5, 2)
        assert validity_problem(renewal, date(2024, 3, 21)) is None
        await session.refresh(first)
        assert first.status == "canceled"

    @pytest.mark.asyncio
    async def test_renewal_extends_from_current_end(self, session, make_profile):
        member = await make_profile()
        await create_subscription(session, member.id, "monthly", today=date(2024, 3, 1))
        renewal = await create_subscription(session, member.id, "quarterly", today=date(2024, 3, 25))
        assert renewal.start_date == date(2024, 3, 25)
        assert renewal.end_date == date(2024, 7, 1)

    @pytest.mark.asyncio
    async def test_renewal_leaving_a_gap_rejected(self, session, make_profile):
        member = await make_profile()
        current = await create_subscription(session, member.id, "monthly", today=date(2024, 3, 1))
        with pytest.raises(InputError) as exc:
            await create_subscription(
                session, member.id, "monthly", today=date(2024, 3, 20), start_date=date(2024, 5, 1)
            )
        assert exc.value.code == "INVALID_INPUT"
        await session.refresh(current)
        assert current.status == "active"

    @pytest.mark.asyncio
    async def test_future_pack_while_plan_in_force_rejected(self, session, make_profile):
        member = await make_profile()
        await create_subscription(session, member.id, "monthly", today=date(2024, 3, 1))
        with pytest.raises(InputError):
            await create_subscription(
                session, member.id, "pay_per_class", today=date(2024, 3, 20), start_date=date(2024, 4, 5)
            )

    @pytest.mark.asyncio
    async def test_lapsed_plan_is_replaced_from_requested_start(self, session, make_profile):
        member = await make_profile()
        await create_subscription(session, member.id, "monthly", today=date(2024, 1, 1))
        sub = await create_subscription(session, member.id, "monthly", today=date(2024, 3, 10))
        assert (sub.start_date, sub.end_date) == (date(2024, 3, 10), date(2024, 4, 10))

    @pytest.mark.asyncio
    async def test_current_subscription_prefers_active(self, session, make_profile):
        member = await make_profile()
        await create_subscription(session, member.id, "monthly", today=date(2024, 1, 1))
        latest = await create_subscription(session, member.id, "yearly", today=date(2024, 2, 1))
        await session.commit()
        assert (await current_subscription(session, member.id)).id == latest.id


# ---------------------------------------------------------------------------
# Integration Tests: expiry sweep
# ---------------------------------------------------------------------------

class TestExpirySweep:
    @pytest.mark.asyncio
    async def test_monthly_boundary(self, session, make_profile):
        member = await make_profile()
        sub = await create_subscription(
            session, member.id, "monthly", today=date(2024, 3, 1)
        )
        await session.commit()
        assert sub.end_date == date(2024, 4, 1)

        result = await run_expiry_sweep(session, date(2024, 3, 31))
        assert result.total == 0
        await session.refresh(sub)
        assert sub.status == "active"

        result = await run_expiry_sweep(session, date(2024, 4, 2))
        assert result.time_expired == 1
        await session.refresh(sub)
        assert sub.status == "expired"
        assert sub.expired_on == date(2024, 4, 2)

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, session, make_profile):
        a = await make_profile()
        b = await make_profile()
        await create_subscription(session, a.id, "monthly", today=date(2024, 1, 1))
        pack = await create_subscription(
            session, b.id, "pay_per_class", today=date(2024, 1, 1), remaining_classes=1
        )
        await consume_one_class(session, pack, on_date=date(2024, 1, 2))
        await session.commit()

        first = await run_expiry_sweep(session, date(2024, 3, 1))
        await session.commit()
        assert first.time_expired == 1
        # The last class already flipped the pack to expired
        assert first.sessions_expired == 0

        second = await run_expiry_sweep(session, date(2024, 3, 1))
        assert second.total == 0

    @pytest.mark.asyncio
    async def test_sweep_expires_drained_packs(self, session, make_profile):
        member = await make_profile()
        pack = await create_subscription(
            session, member.id, "pay_per_class", today=date(2024, 1, 1), remaining_classes=2
        )
        pack.remaining_classes = 0
        session.add(pack)
        await session.commit()

        result = await run_expiry_sweep(session, date(2024, 1, 5))
        assert result.sessions_expired == 1

    @pytest.mark.asyncio
    async def test_sweep_never_touches_canceled(self, session, make_profile):
        member = await make_profile()
        sub = await create_subscription(session, member.id, "monthly", today=date(2024, 1, 1))
        await cancel_subscription(session, sub, now=NOW)
        await session.commit()

        result = await run_expiry_sweep(session, date(2025, 1, 1))
        assert result.total == 0
        await session.refresh(sub)
        assert sub.status == "canceled"


# ---------------------------------------------------------------------------
# Integration Tests: consumption, cancellation, top-up
# ---------------------------------------------------------------------------

class TestStateChanges:
    @pytest.mark.asyncio
    async def test_consume_decrements_and_expires_on_last(self, session, make_profile):
        member = await make_profile()
        pack = await create_subscription(
            session, member.id, "pay_per_class", today=date(2024, 1, 1), remaining_classes=2
        )
        await consume_one_class(session, pack, on_date=date(2024, 1, 2))
        assert pack.remaining_classes == 1
        assert pack.status == "active"
        assert pack.version == 2

        await consume_one_class(session, pack, on_date=date(2024, 1, 3))
        assert pack.remaining_classes == 0
        assert pack.status == "expired"
        assert pack.expired_on == date(2024, 1, 3)

    @pytest.mark.asyncio
    async def test_consume_rejects_time_bounded(self, session, make_profile):
        member = await make_profile()
        sub = await create_subscription(session, member.id, "yearly", today=date(2024, 1, 1))
        with pytest.raises(StateError) as exc:
            await consume_one_class(session, sub, on_date=date(2024, 1, 2))
        assert exc.value.code == "NOT_CONSUMABLE"
        assert exc.value.status_code == 409

    @pytest.mark.asyncio
    async def test_consume_with_stale_version_conflicts(self, session_factory, make_profile):
        member = await make_profile()
        async with session_factory() as s:
            pack = await create_subscription(
                s, member.id, "pay_per_class", today=date(2024, 1, 1), remaining_classes=5
            )
            await s.commit()

        async with session_factory() as stale, session_factory() as fresh:
            stale_copy = await stale.get(Subscription, pack.id)
            fresh_copy = await fresh.get(Subscription, pack.id)
            await consume_one_class(fresh, fresh_copy, on_date=date(2024, 1, 2))
            await fresh.commit()

            with pytest.raises(StoreConflict):
                await consume_one_class(stale, stale_copy, on_date=date(2024, 1, 2))

    @pytest.mark.asyncio
    async def test_cancel_only_from_active(self, session, make_profile):
        member = await make_profile()
        sub = await create_subscription(session, member.id, "monthly", today=date(2024, 1, 1))
        await cancel_subscription(session, sub, now=NOW)
        assert sub.status == "canceled"

        with pytest.raises(StateError) as exc:
            await cancel_subscription(session, sub, now=NOW)
        assert exc.value.code == "SUBSCRIPTION_NOT_ACTIVE"

    @pytest.mark.asyncio
    async def test_add_classes_opens_new_era(self, session, make_profile):
        member = await make_profile()
        pack = await create_subscription(
            session, member.id, "pay_per_class", today=date(2024, 1, 1), remaining_classes=1
        )
        await add_classes(session, pack, 5)
        assert pack.remaining_classes == 6
        assert pack.class_grants == 2

    @pytest.mark.asyncio
    async def test_add_classes_rejects_expired_pack(self, session, make_profile):
        member = await make_profile()
        pack = await create_subscription(
            session, member.id, "pay_per_class", today=date(2024, 1, 1), remaining_classes=1
        )
        await consume_one_class(session, pack, on_date=date(2024, 1, 2))
        with pytest.raises(StateError) as exc:
            await add_classes(session, pack, 5)
        assert exc.value.code == "NOT_CONSUMABLE"

    @pytest.mark.asyncio
    async def test_cancel_retries_after_concurrent_visit(self, session_factory, make_profile):
        member = await make_profile()
        async with session_factory() as s:
            sub = await create_subscription(s, member.id, "monthly", today=date(2024, 1, 1))
            await s.commit()

        async with session_factory() as admin, session_factory() as kiosk:
            admin_copy = await admin.get(Subscription, sub.id)
            await claim_visit(kiosk, await kiosk.get(Subscription, sub.id))
            await kiosk.commit()

            await cancel_subscription(admin, admin_copy, now=NOW)
            await admin.commit()
            assert admin_copy.status == "canceled"
            assert admin_copy.version == 3

    @pytest.mark.asyncio
    async def test_top_up_retries_after_concurrent_scan(self, session_factory, make_profile):
        member = await make_profile()
        async with session_factory() as s:
            pack = await create_subscription(
                s, member.id, "pay_per_class", today=date(2024, 1, 1), remaining_classes=3
            )
            await s.commit()

        async with session_factory() as admin, session_factory() as kiosk:
            admin_copy = await admin.get(Subscription, pack.id)
            await consume_one_class(kiosk, await kiosk.get(Subscription, pack.id), on_date=date(2024, 1, 2))
            await kiosk.commit()

            await add_classes(admin, admin_copy, 5)
            await admin.commit()
            assert admin_copy.remaining_classes == 7
            assert admin_copy.class_grants == 2

    @pytest.mark.asyncio
    async def test_top_up_after_last_class_reports_state(self, session_factory, make_profile):
        member = await make_profile()
        async with session_factory() as s:
            pack = await create_subscription(
                s, member.id, "pay_per_class", today=date(2024, 1, 1), remaining_classes=1
            )
            await s.commit()

        async with session_factory() as admin, session_factory() as kiosk:
            admin_copy = await admin.get(Subscription, pack.id)
            await consume_one_class(kiosk, await kiosk.get(Subscription, pack.id), on_date=date(2024, 1, 2))
            await kiosk.commit()

            with pytest.raises(StateError) as exc:
                await add_classes(admin, admin_copy, 5)
            assert exc.value.code == "NOT_CONSUMABLE"
