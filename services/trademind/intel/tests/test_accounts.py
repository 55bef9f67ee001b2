"""Payment submission and admin review."""

from unittest.mock import AsyncMock

import pytest

from ..accounts import AdminConsole, PaymentForm, PLACEHOLDER_SCREENSHOT, submit_payment
from ..backend import BackendResult
from ..models import UserRole, UserStatus
from ..store import ProfileRepository
from .fakes import FakeBackend, FakeLogger, make_user


@pytest.fixture
def backend():
    b = FakeBackend()
    b.rows("profiles").extend([
        {"id": "u1", "name": "A", "email": "a@x.io", "role": "USER", "status": "REJECTED",
         "payment_details": {"transactionId": "T1", "amount": 1999, "date": "d", "screenshotUrl": "s"}},
        {"id": "u2", "name": "B", "email": "b@x.io", "role": "USER", "status": "ACTIVE",
         "payment_details": {"transactionId": "T2", "amount": 2500, "date": "d", "screenshotUrl": "s"}},
        {"id": "u3", "name": "C", "email": "c@x.io", "role": "USER", "status": "PENDING"},
    ])
    return b


@pytest.fixture
def repo(backend):
    return ProfileRepository(backend, FakeLogger())


class TestPayment:
    def test_form_parsing(self):
        form = PaymentForm.from_dict({"transactionId": "  UPI-77 "})
        assert form.transaction_id == "UPI-77"
        assert form.amount == 1999
        assert form.to_payment().screenshot_url == PLACEHOLDER_SCREENSHOT

    @pytest.mark.asyncio
    async def test_transaction_id_required(self, repo):
        result = await submit_payment(repo, make_user("u3"), PaymentForm(""))
        assert result.error.message == "Transaction ID is required"

    @pytest.mark.asyncio
    async def test_resubmission_goes_back_to_pending(self, backend, repo):
        result = await submit_payment(repo, make_user("u1"), PaymentForm("UPI-9", 1999, "https://x.io/s.png"))
        assert result.ok
        row = backend.rows("profiles")[0]
        assert row["status"] == "PENDING"
        assert row["payment_details"]["transactionId"] == "UPI-9"
        assert "rejectionReason" not in row["payment_details"]


class TestAdminConsole:
    @pytest.mark.asyncio
    async def test_stats(self, repo):
        console = AdminConsole(repo, FakeLogger())
        stats = console.stats(await console.list_users())
        assert stats == {"total": 3, "pending": 1, "active": 1, "revenue": 4499}

    @pytest.mark.asyncio
    async def test_non_admin_cannot_change_status(self, repo):
        console = AdminConsole(repo, FakeLogger())
        result = await console.change_status(make_user("u9"), "u3", UserStatus.ACTIVE)
        assert result.error.status == 403

    @pytest.mark.asyncio
    async def test_rejection_needs_reason(self, repo):
        console = AdminConsole(repo, FakeLogger())
        admin = make_user("a1", role=UserRole.ADMIN)
        result = await console.change_status(admin, "u3", UserStatus.REJECTED, "  ")
        assert result.error.message == "Please provide a rejection reason"

    @pytest.mark.asyncio
    async def test_approve_logs_without_reason(self, backend, repo):
        console = AdminConsole(repo, FakeLogger())
        admin = make_user("a1", role=UserRole.ADMIN)
        result = await console.change_status(admin, "u3", UserStatus.ACTIVE, "ignored")
        assert result.ok
        assert backend.rows("profiles")[2]["status"] == "ACTIVE"
        log = backend.rows("admin_logs")[0]
        assert (log["action"], log["reason"]) == ("APPROVE", None)

    @pytest.mark.asyncio
    async def test_rejection_reason_reaches_repository(self):
        repo = AsyncMock()
        repo.update_profile_status.return_value = BackendResult()
        console = AdminConsole(repo, FakeLogger())
        admin = make_user("a1", role=UserRole.ADMIN)

        result = await console.change_status(admin, "u3", UserStatus.REJECTED, "blurry screenshot")
        assert result.ok
        repo.update_profile_status.assert_awaited_once_with(
            "u3", UserStatus.REJECTED, "a1", "blurry screenshot")
