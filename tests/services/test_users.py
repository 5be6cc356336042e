"""
Unit tests for user service layer.

Tests focus on:
- Bulk provisioning summary (created / existing / failed)
- Trial end calculation
- Partner eligibility
- Update validation
"""
import asyncpg
import pytest
from datetime import timedelta
from unittest.mock import patch, AsyncMock

from crm.core.exceptions import (
    IllegalStatusTransitionError,
    PartnerNotFoundError,
    UserAlreadyExistsError,
)
from crm.services.users.service import (
    normalize_email,
    provision_users,
    update_user,
    validate_region,
    validate_trial_days,
)
from crm.services.users.exceptions import InvalidUserDataError, PartnerInactiveError


class TestValidation:
    """Tests for input validators"""

    def test_email_normalized(self):
        assert normalize_email("  Jane.Doe@Example.COM ") == "jane.doe@example.com"

    @pytest.mark.parametrize("email", ["", "no-at-sign", "a@b", "a b@c.com"])
    def test_invalid_email(self, email):
        with pytest.raises(InvalidUserDataError, match="Invalid email format"):
            normalize_email(email)

    def test_region(self):
        assert validate_region("India") == "India"
        assert validate_region(None) is None
        with pytest.raises(InvalidUserDataError):
            validate_region("Mars")

    def test_trial_days(self):
        assert validate_trial_days(None) == 15
        assert validate_trial_days(30) == 30
        for bad in (0, -1, True, "7"):
            with pytest.raises(InvalidUserDataError):
                validate_trial_days(bad)


class TestProvisionUsers:
    """Tests for provision_users"""

    @pytest.mark.asyncio
    async def test_mixed_batch(self, now):
        """Per-email failures are reported, not raised"""
        with patch('crm.services.users.service.database') as mock_db:
            mock_db.create_user_subscription = AsyncMock(
                side_effect=[{"user_id": "u1"}, UserAlreadyExistsError("exists")]
            )

            summary = await provision_users(
                ["A@Example.com ", "bad", "dup@example.com"], region="India", now=now,
            )

            assert [r.email for r in summary.created] == ["a@example.com"]
            assert [r.email for r in summary.existing] == ["dup@example.com"]
            assert summary.existing[0].reason == "User already exists"
            assert [r.email for r in summary.failed] == ["bad"]
            assert summary.failed[0].reason == "Invalid email format"
            assert summary.http_status == 201
            assert mock_db.create_user_subscription.await_count == 2

    @pytest.mark.asyncio
    async def test_trial_end_and_arguments(self, now, partner_id, partner_row):
        with patch('crm.services.users.service.database') as mock_db:
            mock_db.get_partner = AsyncMock(return_value=partner_row)
            mock_db.create_user_subscription = AsyncMock(return_value={})

            summary = await provision_users(["u@example.com"], partner_id=partner_id, trial_days=7, now=now)

            assert summary.subscription_ends_at == now + timedelta(days=7)
            kwargs = mock_db.create_user_subscription.await_args.kwargs
            assert kwargs["email"] == "u@example.com"
            assert kwargs["partner_id"] == partner_id
            assert kwargs["subscription_ends_at"] == now + timedelta(days=7)
            assert summary.created[0].user_id == kwargs["user_id"]

    @pytest.mark.asyncio
    async def test_default_trial_is_fifteen_days(self, now):
        with patch('crm.services.users.service.database') as mock_db:
            mock_db.create_user_subscription = AsyncMock(return_value={})
            summary = await provision_users(["u@example.com"], now=now)
            assert summary.trial_days == 15
            assert summary.subscription_ends_at == now + timedelta(days=15)

    @pytest.mark.asyncio
    async def test_only_duplicates_is_200(self, now):
        with patch('crm.services.users.service.database') as mock_db:
            mock_db.create_user_subscription = AsyncMock(side_effect=UserAlreadyExistsError("exists"))
            summary = await provision_users(["u@example.com"], now=now)
            assert summary.http_status == 200

    @pytest.mark.asyncio
    async def test_database_error_reported_as_failed(self, now):
        with patch('crm.services.users.service.database') as mock_db:
            mock_db.create_user_subscription = AsyncMock(side_effect=asyncpg.PostgresError("boom"))
            summary = await provision_users(["u@example.com"], now=now)
            assert summary.failed[0].reason == "Database error"
            assert summary.http_status == 400

    @pytest.mark.asyncio
    async def test_inactive_partner_rejected(self, partner_id, partner_row):
        partner_row["is_active"] = False
        with patch('crm.services.users.service.database') as mock_db:
            mock_db.get_partner = AsyncMock(return_value=partner_row)
            mock_db.create_user_subscription = AsyncMock()
            with pytest.raises(PartnerInactiveError):
                await provision_users(["u@example.com"], partner_id=partner_id)
            mock_db.create_user_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_partner_rejected(self, partner_id):
        with patch('crm.services.users.service.database') as mock_db:
            mock_db.get_partner = AsyncMock(return_value=None)
            with pytest.raises(PartnerNotFoundError):
                await provision_users(["u@example.com"], partner_id=partner_id)

    @pytest.mark.asyncio
    async def test_malformed_partner_id(self):
        with patch('crm.services.users.service.database') as mock_db:
            mock_db.get_partner = AsyncMock(side_effect=ValueError("Invalid partner_id: 'x'"))
            with pytest.raises(InvalidUserDataError):
                await provision_users(["u@example.com"], partner_id="x")

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        with pytest.raises(InvalidUserDataError):
            await provision_users([])

    @pytest.mark.asyncio
    async def test_oversized_batch(self):
        with pytest.raises(InvalidUserDataError):
            await provision_users([f"u{i}@example.com" for i in range(501)])


class TestUpdateUser:
    """Tests for update_user"""

    @pytest.mark.asyncio
    async def test_email_normalized_before_write(self, user_id):
        with patch('crm.services.users.service.database') as mock_db:
            mock_db.update_user = AsyncMock(return_value={"user_id": user_id})
            await update_user(user_id, email=" New@Example.com ")
            assert mock_db.update_user.await_args.kwargs["email"] == "new@example.com"

    @pytest.mark.asyncio
    async def test_invalid_region_not_written(self, user_id):
        with patch('crm.services.users.service.database') as mock_db:
            mock_db.update_user = AsyncMock()
            with pytest.raises(InvalidUserDataError):
                await update_user(user_id, region="Atlantis")
            mock_db.update_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_status_value(self, user_id):
        with patch('crm.services.users.service.database') as mock_db:
            mock_db.update_user = AsyncMock(side_effect=ValueError("Unknown subscription status: 'paused'"))
            with pytest.raises(InvalidUserDataError):
                await update_user(user_id, subscription_status="paused")

    @pytest.mark.asyncio
    async def test_illegal_transition_propagates(self, user_id):
        with patch('crm.services.users.service.database') as mock_db:
            mock_db.update_user = AsyncMock(side_effect=IllegalStatusTransitionError("active", "added"))
            with pytest.raises(IllegalStatusTransitionError):
                await update_user(user_id, subscription_status="added")
