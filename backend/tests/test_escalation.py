"""
Tests for the overdue escalation sweep and its Celery task.

Covers:
  - checked_out → overdue promotion with tier-scaled, clamped penalties
  - Overdue alerts (warning / critical) and their resolution on return
  - Blocking after repeated overdue trolleys, exactly once
  - overdue → unreturned after seven days
  - Per-assignment failure isolation
  - Redis-locked task runner (skip on overlap, no retry on failure)
"""

from datetime import timedelta, timezone

import pytest
from sqlalchemy import select

from alerts.engine import AlertPublisher, GeofenceAlertManager
from core.enums import AlertType
from db.models import Alert, CustomerTrolleyAssignment, LoyaltyCard, Trolley, utcnow
from loyalty.assignments import AssignmentLedger
from loyalty.escalation import LifecycleEscalator
from loyalty.ledger import DatabaseLoyaltyLedger
from workers.escalation import ESCALATION_LOCK_NAME, check_overdue_assignments, run_escalation

PHONE = "+27829876543"


@pytest.fixture
def alerts(db, fake_redis):
    return GeofenceAlertManager(db, publisher=AlertPublisher(fake_redis))


@pytest.fixture
def checkouts(db, alerts, settings):
    return AssignmentLedger(db, DatabaseLoyaltyLedger(db), alerts=alerts, settings=settings)


@pytest.fixture
def escalator(db, alerts, settings):
    return LifecycleEscalator(db, DatabaseLoyaltyLedger(db), alerts=alerts, settings=settings)


async def _status(db, assignment_id) -> str:
    result = await db.execute(
        select(CustomerTrolleyAssignment.status).where(CustomerTrolleyAssignment.assignment_id == assignment_id)
    )
    return result.scalar_one()


async def _card(db, card_number) -> LoyaltyCard:
    result = await db.execute(
        select(LoyaltyCard)
        .where(LoyaltyCard.card_number == card_number)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _overdue_alert(db, trolley_id) -> Alert | None:
    result = await db.execute(
        select(Alert)
        .where(Alert.trolley_id == trolley_id, Alert.alert_type == AlertType.OVERDUE_RETURN.value)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


# ── Promotion ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestOverduePromotion:
    async def test_penalty_and_alert(self, checkouts, escalator, db, seeded, fake_redis):
        now = utcnow()
        assignment = await checkouts.checkout(
            seeded["card_number"], "card", seeded["store_id"], trolley_id=seeded["trolley_id"], now=now - timedelta(hours=30)
        )
        assignment_id = assignment.assignment_id

        summary = await escalator.run_escalation_sweep(now=now)

        assert summary.overdue_promoted == 1
        assert summary.penalties_applied == 1
        assert summary.alerts_raised == 1
        assert summary.errors == 0
        assert await _status(db, assignment_id) == "overdue"

        card = await _card(db, seeded["card_number"])
        assert card.points_balance == 50  # 26 hours overdue, bronze → 50
        assert card.consecutive_returns == 0

        refreshed = await db.get(CustomerTrolleyAssignment, assignment_id)
        assert refreshed.penalty_points == 50
        assert refreshed.notes == "Overdue penalty: requested 50, deducted 50"

        alert = await _overdue_alert(db, seeded["trolley_id"])
        assert alert.severity == "warning"
        assert alert.message.startswith("Trolley RFID-0001 is 26 hours overdue.")
        assert [m["payload"]["alert_type"] for _, m in fake_redis.published] == ["overdue_return"]

    async def test_not_yet_due_is_untouched(self, checkouts, escalator, db, seeded):
        now = utcnow()
        assignment = await checkouts.checkout(
            seeded["card_number"], "card", seeded["store_id"], trolley_id=seeded["trolley_id"], now=now - timedelta(hours=3)
        )

        summary = await escalator.run_escalation_sweep(now=now)

        assert summary.overdue_promoted == 0
        assert await _status(db, assignment.assignment_id) == "checked_out"

    async def test_aware_sweep_time(self, checkouts, escalator, db, seeded):
        now = utcnow()
        assignment = await checkouts.checkout(
            seeded["card_number"], "card", seeded["store_id"], trolley_id=seeded["trolley_id"], now=now - timedelta(hours=30)
        )

        summary = await escalator.run_escalation_sweep(now=now.replace(tzinfo=timezone.utc))

        assert summary.overdue_promoted == 1
        assert summary.errors == 0
        assert await _status(db, assignment.assignment_id) == "overdue"

    async def test_penalty_clamped_at_zero_balance(self, checkouts, escalator, db, seeded):
        card = await _card(db, seeded["card_number"])
        card.points_balance = 30
        await db.commit()
        now = utcnow()
        assignment = await checkouts.checkout(
            seeded["card_number"], "card", seeded["store_id"], trolley_id=seeded["trolley_id"], now=now - timedelta(hours=30)
        )
        assignment_id = assignment.assignment_id

        await escalator.run_escalation_sweep(now=now)

        assert (await _card(db, seeded["card_number"])).points_balance == 0
        refreshed = await db.get(CustomerTrolleyAssignment, assignment_id)
        assert refreshed.notes == "Overdue penalty: requested 50, deducted 30"

    async def test_walk_in_gets_alert_without_penalty(self, checkouts, escalator, db, seeded):
        now = utcnow()
        await checkouts.checkout(PHONE, "phone", seeded["store_id"], trolley_id=seeded["trolley_id"], now=now - timedelta(hours=10))

        summary = await escalator.run_escalation_sweep(now=now)

        assert summary.overdue_promoted == 1
        assert summary.penalties_applied == 0
        alert = await _overdue_alert(db, seeded["trolley_id"])
        assert "Walk-in Customer" in alert.message

    async def test_long_overdue_is_critical(self, checkouts, escalator, db, seeded):
        now = utcnow()
        await checkouts.checkout(
            seeded["card_number"], "card", seeded["store_id"], trolley_id=seeded["trolley_id"], now=now - timedelta(hours=60)
        )

        await escalator.run_escalation_sweep(now=now)

        alert = await _overdue_alert(db, seeded["trolley_id"])
        assert alert.severity == "critical"

    async def test_return_resolves_overdue_alert(self, checkouts, escalator, db, seeded):
        now = utcnow()
        await checkouts.checkout(
            seeded["card_number"], "card", seeded["store_id"], trolley_id=seeded["trolley_id"], now=now - timedelta(hours=8)
        )
        await escalator.run_escalation_sweep(now=now)

        result = await checkouts.return_trolley(seeded["card_number"], trolley_id=seeded["trolley_id"], now=now)

        assert result.assignment.status == "returned"
        assert not result.on_time
        alert = await _overdue_alert(db, seeded["trolley_id"])
        assert alert.resolved is True


# ── Blocking ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestBlocking:
    async def test_blocked_exactly_once_across_sweeps(self, checkouts, escalator, db, seeded):
        third = Trolley(store_id=seeded["store_id"], rfid_tag="RFID-0004")
        db.add(third)
        await db.commit()

        now = utcnow()
        for trolley_id in (seeded["trolley_id"], seeded["second_trolley_id"], third.trolley_id):
            await checkouts.checkout(
                seeded["card_number"], "card", seeded["store_id"], trolley_id=trolley_id, now=now - timedelta(hours=6)
            )

        first = await escalator.run_escalation_sweep(now=now)
        second = await escalator.run_escalation_sweep(now=now + timedelta(hours=1))

        assert first.overdue_promoted == 3
        assert first.accounts_blocked == 1
        assert second.overdue_promoted == 0
        assert second.accounts_blocked == 0

        card = await _card(db, seeded["card_number"])
        assert card.is_active is False
        assert card.blocked_reason == "3 unreturned trolleys. Please return all trolleys to reactivate card."

    async def test_two_overdue_does_not_block(self, checkouts, escalator, db, seeded):
        now = utcnow()
        for trolley_id in (seeded["trolley_id"], seeded["second_trolley_id"]):
            await checkouts.checkout(
                seeded["card_number"], "card", seeded["store_id"], trolley_id=trolley_id, now=now - timedelta(hours=6)
            )

        summary = await escalator.run_escalation_sweep(now=now)

        assert summary.accounts_blocked == 0
        assert (await _card(db, seeded["card_number"])).is_active is True


# ── Unreturned ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestUnreturned:
    async def test_overdue_for_a_week_becomes_unreturned(self, checkouts, escalator, db, seeded):
        now = utcnow()
        assignment = await checkouts.checkout(
            PHONE, "phone", seeded["store_id"], trolley_id=seeded["trolley_id"], now=now - timedelta(days=9)
        )

        summary = await escalator.run_escalation_sweep(now=now)

        assert summary.overdue_promoted == 1
        assert summary.unreturned_escalated == 1
        assert await _status(db, assignment.assignment_id) == "unreturned"

    async def test_unreturned_trolley_can_be_checked_out_again(self, checkouts, escalator, seeded):
        now = utcnow()
        await checkouts.checkout(PHONE, "phone", seeded["store_id"], trolley_id=seeded["trolley_id"], now=now - timedelta(days=9))
        await escalator.run_escalation_sweep(now=now)

        again = await checkouts.checkout(seeded["card_number"], "card", seeded["store_id"], trolley_id=seeded["trolley_id"])
        assert again.status == "checked_out"


# ── Failure isolation ──────────────────────────────────────────────────


@pytest.mark.asyncio
class TestFailureIsolation:
    async def test_bad_assignment_does_not_stop_sweep(self, checkouts, escalator, db, seeded):
        now = utcnow()
        card = await _card(db, seeded["card_number"])
        broken = CustomerTrolleyAssignment(
            trolley_id=seeded["second_trolley_id"],
            store_id=seeded["store_id"],
            loyalty_card_id=card.card_id,
            customer_identifier="XS0000000000",  # no such card in the ledger
            identifier_type="card",
            checkout_at=now - timedelta(hours=12),
            expected_return_at=now - timedelta(hours=8),
        )
        db.add(broken)
        await db.commit()
        broken_id = broken.assignment_id
        good = await checkouts.checkout(PHONE, "phone", seeded["store_id"], trolley_id=seeded["trolley_id"], now=now - timedelta(hours=6))

        summary = await escalator.run_escalation_sweep(now=now)

        assert summary.errors == 1
        assert summary.overdue_promoted == 1
        assert await _status(db, broken_id) == "checked_out"
        assert await _status(db, good.assignment_id) == "overdue"


# ── Task runner ────────────────────────────────────────────────────────


async def _seed_overdue(database, seeded) -> None:
    async with database.session() as session:
        checkouts = AssignmentLedger(session, DatabaseLoyaltyLedger(session))
        await checkouts.checkout(
            PHONE, "phone", seeded["store_id"], trolley_id=seeded["trolley_id"], now=utcnow() - timedelta(hours=10)
        )


@pytest.mark.asyncio
class TestRunEscalation:
    async def test_runs_sweep_and_releases_lock(self, database, seeded, settings, fake_redis):
        await _seed_overdue(database, seeded)

        result = await run_escalation(settings, database=database, redis=fake_redis)

        assert result["status"] == "success"
        assert result["overdue_promoted"] == 1
        assert ESCALATION_LOCK_NAME not in fake_redis.held_locks
        assert fake_redis.published

    async def test_overlapping_run_is_skipped(self, database, seeded, settings, fake_redis):
        await _seed_overdue(database, seeded)
        fake_redis.held_locks.add(ESCALATION_LOCK_NAME)

        result = await run_escalation(settings, database=database, redis=fake_redis)

        assert result == {"status": "skipped", "reason": "sweep_in_progress"}
        async with database.session() as session:
            statuses = (await session.execute(select(CustomerTrolleyAssignment.status))).scalars().all()
        assert statuses == ["checked_out"]


def test_failed_sweep_is_not_retried(monkeypatch):
    async def _boom(settings):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr("workers.escalation.run_escalation", _boom)

    result = check_overdue_assignments.run()

    assert result == {"status": "failed", "error": "database unavailable"}
