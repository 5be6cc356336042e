"""
Integration tests against a real PostgreSQL.

Enabled by TEST_DATABASE_URL (a disposable database: tables are truncated
before every test). Skipped otherwise.

Tests:
1. Concurrent payments for one user -> exactly one conversion and one credit
2. Commission additivity across concurrently converting users
3. Duplicate payment reference -> one payment row
4. No regression to 'added' (application guard and storage trigger)
5. Sweeper idempotent under concurrent runs
6. Enrollment counting with mixed referred / organic users
7. Reporting totals agree with commission_entries
"""
import asyncio
import os
import uuid
import asyncpg
import pytest
import pytest_asyncio
from datetime import timedelta
from decimal import Decimal

import database
from crm.core.exceptions import IllegalStatusTransitionError
from crm.core.subscription_state import STATUS_TRANSITION_CONSTRAINT
from crm.utils.date_utils import utcnow

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(not TEST_DATABASE_URL, reason="TEST_DATABASE_URL not set")


@pytest_asyncio.fixture
async def ledger_db(monkeypatch):
    """Migrated, empty ledger bound to this test's event loop"""
    monkeypatch.setattr(database, "DATABASE_URL", TEST_DATABASE_URL)
    monkeypatch.setattr(database, "DB_READY", False)
    monkeypatch.setattr(database, "_pool", None)
    assert await database.init_db()
    pool = await database.get_pool()
    await pool.execute("TRUNCATE commission_entries, payments, user_subscriptions, partners")
    yield pool
    await database.close_pool()


async def _partner(percent=10):
    return await database.create_partner(f"p-{uuid.uuid4().hex[:8]}@example.com", "Partner", percent)


async def _user(partner_id=None, ends_at=None):
    user_id = uuid.uuid4()
    await database.create_user_subscription(
        user_id, f"u-{user_id.hex[:8]}@example.com", "India", partner_id, ends_at,
    )
    return user_id


async def _pay(user_id, amount, reference=None):
    return await database.record_payment(
        user_id, Decimal(amount), "usd", reference or f"pi_{uuid.uuid4().hex}", utcnow(),
    )


class TestAtMostOnceConversion:
    """Concurrent payments for the same never-converted user"""

    @pytest.mark.asyncio
    async def test_two_concurrent_payments(self, ledger_db):
        """100 and 50 race: one wins, the partner is credited 10% of that one only"""
        partner = await _partner(10)
        user_id = await _user(partner["id"])

        results = await asyncio.gather(_pay(user_id, "100.00"), _pay(user_id, "50.00"))

        assert sum(1 for r in results if r["converted"]) == 1
        winner = next(r for r in results if r["converted"])
        refreshed = await database.get_partner(partner["id"])
        assert refreshed["total_converted"] == 1
        assert refreshed["total_revenue"] in (Decimal("10.00"), Decimal("5.00"))
        assert refreshed["total_revenue"] == winner["commission_amount"]

        user = await database.get_user_subscription(user_id)
        assert user["converted_at"] is not None
        assert user["subscription_status"] == "active"
        assert await ledger_db.fetchval("SELECT COUNT(*) FROM payments WHERE user_id = $1", user_id) == 2
        assert await ledger_db.fetchval("SELECT COUNT(*) FROM commission_entries WHERE user_id = $1", user_id) == 1

    @pytest.mark.asyncio
    async def test_many_concurrent_payments(self, ledger_db):
        partner = await _partner(10)
        user_id = await _user(partner["id"])

        results = await asyncio.gather(*[_pay(user_id, "20.00") for _ in range(8)])

        assert sum(1 for r in results if r["converted"]) == 1
        refreshed = await database.get_partner(partner["id"])
        assert refreshed["total_converted"] == 1
        assert refreshed["total_revenue"] == Decimal("2.00")

    @pytest.mark.asyncio
    async def test_renewal_after_conversion_not_credited(self, ledger_db):
        partner = await _partner(10)
        user_id = await _user(partner["id"])
        await _pay(user_id, "30.00")

        renewal = await _pay(user_id, "30.00")

        assert renewal["converted"] is False
        refreshed = await database.get_partner(partner["id"])
        assert refreshed["total_converted"] == 1
        assert refreshed["total_revenue"] == Decimal("3.00")


class TestCommissionAdditivity:
    """Sum of commissions regardless of interleaving"""

    @pytest.mark.asyncio
    async def test_concurrent_conversions_sum_exactly(self, ledger_db):
        partner = await _partner(7)
        amounts = ["10.00", "33.33", "0.01", "99.99", "250.50", "1.15"]
        users = [await _user(partner["id"]) for _ in amounts]

        await asyncio.gather(*[_pay(u, a) for u, a in zip(users, amounts)])

        expected = sum(Decimal(a) * 7 / 100 for a in amounts)
        refreshed = await database.get_partner(partner["id"])
        assert refreshed["total_revenue"] == expected
        assert refreshed["total_converted"] == len(amounts)
        ledger_sum = await ledger_db.fetchval(
            "SELECT SUM(commission_amount) FROM commission_entries WHERE partner_id = $1", partner["id"],
        )
        assert ledger_sum == expected


class TestIdempotentPayments:
    """Duplicate external references"""

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_reference(self, ledger_db):
        partner = await _partner(10)
        user_id = await _user(partner["id"])

        results = await asyncio.gather(*[_pay(user_id, "40.00", "pi_same") for _ in range(4)])

        assert sum(1 for r in results if not r["duplicate"]) == 1
        assert await ledger_db.fetchval("SELECT COUNT(*) FROM payments WHERE external_payment_id = 'pi_same'") == 1
        refreshed = await database.get_partner(partner["id"])
        assert refreshed["total_revenue"] == Decimal("4.00")


class TestNoRegression:
    """Status guard in the application and in storage"""

    @pytest.mark.asyncio
    async def test_forward_transitions_succeed(self, ledger_db):
        user_id = await _user()
        row = await database.update_user(user_id, subscription_status="active")
        assert row["subscription_status"] == "active"
        row = await database.update_user(user_id, subscription_status="expired")
        assert row["subscription_status"] == "expired"

        trial_user = await _user()
        row = await database.update_user(trial_user, subscription_status="expired")
        assert row["subscription_status"] == "expired"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reached", ["active", "expired"])
    async def test_regression_rejected(self, ledger_db, reached):
        user_id = await _user()
        await database.update_user(user_id, subscription_status=reached)

        with pytest.raises(IllegalStatusTransitionError):
            await database.update_user(user_id, subscription_status="added")

    @pytest.mark.asyncio
    async def test_storage_trigger_rejects_raw_update(self, ledger_db):
        user_id = await _user()
        await database.update_user(user_id, subscription_status="active")

        with pytest.raises(asyncpg.CheckViolationError) as exc_info:
            await ledger_db.execute(
                "UPDATE user_subscriptions SET subscription_status = 'added' WHERE user_id = $1", user_id,
            )
        assert exc_info.value.constraint_name == STATUS_TRANSITION_CONSTRAINT


class TestIdempotentSweep:
    """Expiry sweeper run twice / concurrently"""

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_expire_each_row_once(self, ledger_db):
        now = utcnow()
        due = [await _user(ends_at=now - timedelta(days=1)) for _ in range(5)]
        for user_id in due:
            await database.update_user(user_id, subscription_status="active")
        not_due = await _user(ends_at=now + timedelta(days=10))
        await database.update_user(not_due, subscription_status="active")

        counts = await asyncio.gather(
            database.expire_due_subscriptions(now),
            database.expire_due_subscriptions(now),
        )

        assert sum(counts) == 5
        assert await database.expire_due_subscriptions(now) == 0
        statuses = await ledger_db.fetch("SELECT subscription_status FROM user_subscriptions WHERE user_id = ANY($1)", due)
        assert {r["subscription_status"] for r in statuses} == {"expired"}
        assert (await database.get_user_subscription(not_due))["subscription_status"] == "active"

    @pytest.mark.asyncio
    async def test_lapsed_trial_expired_on_read(self, ledger_db):
        user_id = await _user(ends_at=utcnow() - timedelta(hours=1))
        assert await database.get_effective_status(user_id) == "expired"
        assert (await database.get_user_subscription(user_id))["subscription_status"] == "expired"


class TestEnrollmentCounting:
    """total_added under concurrent provisioning"""

    @pytest.mark.asyncio
    async def test_mixed_enrollment(self, ledger_db):
        partner = await _partner()
        other = await _partner()

        await asyncio.gather(
            *[_user(partner["id"]) for _ in range(6)],
            *[_user(None) for _ in range(4)],
        )

        assert (await database.get_partner(partner["id"]))["total_added"] == 6
        assert (await database.get_partner(other["id"]))["total_added"] == 0


class TestReportingTotals:
    """Reporting reads match the ledger after concurrent conversions"""

    @pytest.mark.asyncio
    async def test_commission_totals_match_entries(self, ledger_db):
        partner = await _partner(10)
        other = await _partner(5)
        amounts = ["10.00", "20.00", "30.00"]
        users = [await _user(partner["id"]) for _ in amounts]
        other_user = await _user(other["id"])
        await _user(partner["id"])

        await asyncio.gather(*[_pay(u, a) for u, a in zip(users, amounts)], _pay(other_user, "40.00"))

        stats = await database.get_partner_stats(partner["id"], utcnow())
        entries_sum = await ledger_db.fetchval(
            "SELECT SUM(commission_amount) FROM commission_entries WHERE partner_id = $1", partner["id"],
        )
        assert stats["commission_total"] == entries_sum == Decimal("6.00")
        assert stats["commission_last_window"] == Decimal("6.00")
        assert stats["partner"]["total_revenue"] == entries_sum
        assert stats["payments_total"] == Decimal("60.00")
        assert stats["payments_count"] == 3
        assert stats["status_counts"] == {"active": 3, "added": 1}

        admin = await database.get_admin_stats(utcnow())
        all_entries = await ledger_db.fetchval("SELECT SUM(commission_amount) FROM commission_entries")
        assert admin["commission_total"] == all_entries == Decimal("8.00")
        assert admin["payments_total"] == Decimal("100.00")
        assert admin["converted_users"] == 4
        assert admin["users_total"] == 5
