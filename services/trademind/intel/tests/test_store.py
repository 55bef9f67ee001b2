"""Profile repository against the in-memory backend."""

import pytest

from ..errors import BackendConnectionError, RecursionPolicyError
from ..models import (
    PaymentDetails, RegistrationDetails, RiskRules, Side, Strategy, Trade, UserRole, UserStatus,
)
from ..policy import AccountPolicy, never_admin
from ..store import ProfileRepository, error_message, registration_from_form
from ..backend import BackendResult
from ..errors import BackendError
from .fakes import FakeBackend, FakeLogger


def profile_row(user_id="u1", **overrides):
    row = {
        "id": user_id, "name": "Trader", "email": f"{user_id}@example.com",
        "role": "USER", "status": "PENDING", "payment_details": None,
    }
    row.update(overrides)
    return row


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def repo(backend):
    return ProfileRepository(backend, FakeLogger())


class TestGetProfile:
    @pytest.mark.asyncio
    async def test_missing_row_is_none(self, repo):
        assert await repo.get_profile("nobody") is None

    @pytest.mark.asyncio
    async def test_merges_registration_details(self, backend, repo):
        backend.rows("profiles").append(profile_row(payment_details={
            "transactionId": "TXN-9", "amount": 1999, "date": "2024-05-01",
            "screenshotUrl": "https://example.com/p.png",
        }))
        backend.rows("registration_details").append({
            "user_id": "u1", "mobile": "9999", "trading_experience": "Intermediate",
            "preferred_market": "Options", "capital_size": "1L+",
        })

        user = await repo.get_profile("u1")
        assert user.payment_details.transaction_id == "TXN-9"
        assert user.registration_details.preferred_market == "Options"
        assert user.to_dict()["registration_details"]["tradingExperience"] == "Intermediate"

    @pytest.mark.asyncio
    async def test_registration_failure_still_returns_profile(self, backend, repo):
        backend.rows("profiles").append(profile_row())
        backend.fail("select", "registration_details", "permission denied for table")
        user = await repo.get_profile("u1")
        assert user is not None
        assert user.registration_details is None

    @pytest.mark.asyncio
    async def test_recursion_raises(self, backend, repo):
        backend.fail("select", "profiles", 'infinite recursion detected in policy for relation "profiles"')
        with pytest.raises(RecursionPolicyError):
            await repo.get_profile("u1")

    @pytest.mark.asyncio
    async def test_connection_raises(self, backend, repo):
        backend.fail("select", "profiles", "socket hang up", transport=True)
        with pytest.raises(BackendConnectionError):
            await repo.get_profile("u1")

    @pytest.mark.asyncio
    async def test_other_error_is_swallowed(self, backend, repo):
        backend.fail("select", "profiles", "column profiles.nickname does not exist")
        assert await repo.get_profile("u1") is None
        assert repo.logger.messages("ERROR")

    @pytest.mark.asyncio
    async def test_duplicate_rows_are_swallowed(self, backend, repo):
        backend.rows("profiles").extend([profile_row(), profile_row()])
        assert await repo.get_profile("u1") is None


class TestCreateProfile:
    @pytest.mark.asyncio
    async def test_user_starts_pending(self, backend, repo):
        result = await repo.create_profile("u1", "Asha", "asha@example.com")
        assert result.ok
        assert result.data.status == UserStatus.PENDING
        assert result.data.role == UserRole.USER
        op, table, rows, conflict = backend.calls[-1]
        assert (op, table, conflict) == ("upsert", "profiles", "id")

    @pytest.mark.asyncio
    async def test_admin_email_starts_active(self, repo):
        result = await repo.create_profile("u1", "Ops", "admin@example.com")
        assert result.data.role == UserRole.ADMIN
        assert result.data.status == UserStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_policy_can_be_swapped(self, backend):
        repo = ProfileRepository(backend, FakeLogger(), AccountPolicy(never_admin))
        result = await repo.create_profile("u1", "Ops", "admin@example.com")
        assert result.data.role == UserRole.USER

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, backend, repo):
        await repo.create_profile("u1", "Asha", "asha@example.com")
        await repo.create_profile("u1", "Asha K", "asha@example.com")
        assert len(backend.rows("profiles")) == 1
        assert backend.rows("profiles")[0]["name"] == "Asha K"

    @pytest.mark.asyncio
    async def test_classified_errors_raise(self, backend, repo):
        backend.fail("upsert", "profiles", "TypeError: Failed to fetch")
        with pytest.raises(BackendConnectionError):
            await repo.create_profile("u1", "Asha", "asha@example.com")

    @pytest.mark.asyncio
    async def test_other_errors_are_returned(self, backend, repo):
        backend.fail("upsert", "profiles", "duplicate key value violates unique constraint")
        result = await repo.create_profile("u1", "Asha", "asha@example.com")
        assert not result.ok
        assert "duplicate key" in result.error.message


class TestAccounts:
    @pytest.mark.asyncio
    async def test_get_all_profiles_embeds_registration(self, backend, repo):
        backend.rows("profiles").extend([profile_row("u1"), profile_row("u2")])
        backend.rows("registration_details").append({
            "user_id": "u2", "mobile": "1", "trading_experience": "Beginner",
            "preferred_market": "Indices", "capital_size": "10k - 50k",
        })
        users = {u.id: u for u in await repo.get_all_profiles()}
        assert users["u1"].registration_details is None
        assert users["u2"].registration_details.mobile == "1"

    @pytest.mark.asyncio
    async def test_get_all_profiles_error_is_empty(self, backend, repo):
        backend.fail("select", "profiles", "permission denied")
        assert await repo.get_all_profiles() == []

    @pytest.mark.asyncio
    async def test_update_status_writes_admin_log(self, backend, repo):
        backend.rows("profiles").append(profile_row())
        result = await repo.update_profile_status("u1", UserStatus.REJECTED, "a1", "blurry screenshot")
        assert result.ok
        assert backend.rows("profiles")[0]["status"] == "REJECTED"
        log = backend.rows("admin_logs")[0]
        assert (log["action"], log["admin_id"], log["reason"]) == ("REJECT", "a1", "blurry screenshot")

    @pytest.mark.asyncio
    async def test_admin_log_failure_is_only_warned(self, backend, repo):
        backend.rows("profiles").append(profile_row())
        backend.fail("insert", "admin_logs", "relation admin_logs does not exist")
        result = await repo.update_profile_status("u1", UserStatus.ACTIVE, "a1")
        assert result.ok
        assert repo.logger.messages("WARN")

    @pytest.mark.asyncio
    async def test_submit_payment_resets_to_pending(self, backend, repo):
        backend.rows("profiles").append(profile_row(status="REJECTED"))
        payment = PaymentDetails("TXN-2", 1999, "2024-05-02", "https://example.com/x.png")
        assert (await repo.submit_payment_proof("u1", payment)).ok
        row = backend.rows("profiles")[0]
        assert row["status"] == "PENDING"
        assert row["payment_details"]["transactionId"] == "TXN-2"

    @pytest.mark.asyncio
    async def test_save_registration_upserts_on_user_id(self, backend, repo):
        details = RegistrationDetails("9", "Pro", "Stocks", "5L+")
        await repo.save_registration_details("u1", details)
        await repo.save_registration_details("u1", details)
        assert len(backend.rows("registration_details")) == 1


class TestJournalData:
    @pytest.mark.asyncio
    async def test_risk_rules_default_to_none(self, repo):
        result = await repo.get_risk_rules("u1")
        assert result.ok and result.data is None

    @pytest.mark.asyncio
    async def test_risk_rules_round_trip(self, repo):
        await repo.save_risk_rules("u1", RiskRules(2, 6, 4))
        result = await repo.get_risk_rules("u1")
        assert result.data == RiskRules(2, 6, 4)

    @pytest.mark.asyncio
    async def test_trades_newest_first(self, repo):
        for ts in ("2024-05-01T04:00:00+00:00", "2024-05-03T04:00:00+00:00"):
            await repo.save_trade(Trade(user_id="u1", instrument="NIFTY", side=Side.BUY,
                                        qty=50, entry_price=100, exit_price=110, timestamp=ts))
        trades = await repo.get_trades("u1")
        assert [t.timestamp[:10] for t in trades] == ["2024-05-03", "2024-05-01"]
        assert trades[0].psychology.confidence == 3

    @pytest.mark.asyncio
    async def test_trade_fetch_error_is_empty(self, backend, repo):
        backend.fail("select", "trades", "timeout")
        assert await repo.get_trades("u1") == []

    @pytest.mark.asyncio
    async def test_strategies(self, backend, repo):
        await repo.save_strategy(Strategy(user_id="u1", name="ORB"))
        strategies = await repo.get_strategies("u1")
        assert [s.name for s in strategies] == ["ORB"]
        assert (await repo.delete_strategy(strategies[0].id)).ok
        assert await repo.get_strategies("u1") == []


class TestHelpers:
    def test_error_message(self):
        assert error_message(BackendResult(), "fallback") is None
        assert error_message(BackendResult(error=BackendError("")), "fallback") == "fallback"
        assert error_message(BackendResult(error=BackendError("boom")), "fallback") == "boom"

    def test_registration_from_form_defaults(self):
        details = registration_from_form({"mobile": "98"})
        assert details == RegistrationDetails("98", "Beginner", "Indices", "10k - 50k")
