"""Tests for the balance ledger."""

from __future__ import annotations

import asyncio
import uuid

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm.exc import StaleDataError

from dxchess.errors import (
    BalanceIntegrityError,
    InsufficientFundsError,
    NotFoundError,
    StateError,
    ValidationError,
)
from dxchess.ledger import MAX_AMOUNT, AccountLocks, Ledger
from dxchess.models import Transaction, TransactionStatus, TransactionType, User
from tests.helpers import open_match


async def _transactions(session, user_id=None, kind=None):
    stmt = select(Transaction)
    if user_id is not None:
        stmt = stmt.where(Transaction.user_id == user_id)
    if kind is not None:
        stmt = stmt.where(Transaction.kind == kind)
    return list((await session.execute(stmt)).scalars())


class TestLock:
    async def test_lock_moves_available_to_locked(self, session, make_user):
        user = await make_user("alice", balance=200_000)
        ledger = Ledger(session)

        account = await ledger.load_account(user.id)
        tx = ledger.lock(account, 50_000)
        await session.commit()

        assert account.available_balance == 150_000
        assert account.locked_balance == 50_000
        assert account.total_staked == 50_000
        assert tx.kind == TransactionType.STAKE
        assert tx.reference.startswith("STK")

    async def test_lock_insufficient_changes_nothing(self, session, make_user):
        user = await make_user("alice", balance=10_000)
        ledger = Ledger(session)
        account = await ledger.load_account(user.id)

        with pytest.raises(InsufficientFundsError):
            ledger.lock(account, 50_000)

        assert account.available_balance == 10_000
        assert account.locked_balance == 0
        assert await _transactions(session, user.id) == []

    async def test_lock_rejects_non_positive(self, session, make_user):
        user = await make_user("alice", balance=10_000)
        account = await Ledger(session).load_account(user.id)
        with pytest.raises(ValidationError):
            Ledger(session).lock(account, 0)


class TestUnlockToCredit:
    async def test_credit_more_than_locked(self, session, make_user):
        user = await make_user("alice", balance=100_000)
        ledger = Ledger(session)
        account = await ledger.load_account(user.id)
        ledger.lock(account, 100_000)

        tx = ledger.unlock_to_credit(account, 100_000, 197_000, kind=TransactionType.WINNING)
        await session.commit()

        assert account.locked_balance == 0
        assert account.available_balance == 197_000
        assert tx.kind == TransactionType.WINNING
        assert tx.amount == 197_000

    async def test_credit_zero_is_forfeit(self, session, make_user):
        user = await make_user("alice", balance=100_000)
        ledger = Ledger(session)
        account = await ledger.load_account(user.id)
        ledger.lock(account, 100_000)

        assert ledger.unlock_to_credit(account, 100_000, 0) is None
        assert account.available_balance == 0
        assert account.locked_balance == 0

    async def test_cannot_release_more_than_locked(self, session, make_user):
        user = await make_user("alice", balance=100_000)
        ledger = Ledger(session)
        account = await ledger.load_account(user.id)
        ledger.lock(account, 50_000)

        with pytest.raises(StateError):
            ledger.unlock_to_credit(account, 60_000, 60_000)
        assert account.locked_balance == 50_000
        assert account.available_balance == 50_000


class TestDepositWithdraw:
    async def test_deposit(self, session, make_user):
        user = await make_user("alice")
        ledger = Ledger(session)
        account = await ledger.load_account(user.id)

        tx = ledger.deposit(account, 10_000)
        await session.commit()

        assert account.available_balance == 10_000
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.reference.startswith("DEP")

    async def test_deposit_below_minimum(self, session, make_user):
        user = await make_user("alice")
        account = await Ledger(session).load_account(user.id)
        with pytest.raises(ValidationError, match="Minimum deposit"):
            Ledger(session).deposit(account, 9_999)
        assert account.available_balance == 0

    async def test_withdraw_creates_pending(self, session, make_user):
        user = await make_user("alice", balance=80_000)
        ledger = Ledger(session)
        account = await ledger.load_account(user.id)

        tx = ledger.withdraw(account, 50_000, bank_details="GTB 0123456789")
        await session.commit()

        assert account.available_balance == 30_000
        assert tx.status == TransactionStatus.PENDING
        assert tx.bank_details == "GTB 0123456789"

    async def test_amount_above_maximum(self, session, make_user):
        user = await make_user("alice")
        account = await Ledger(session).load_account(user.id)
        with pytest.raises(ValidationError, match="exceeds the maximum"):
            Ledger(session).deposit(account, MAX_AMOUNT + 1)
        with pytest.raises(ValidationError, match="exceeds the maximum"):
            Ledger(session).deposit(account, 10 ** 20)
        assert account.available_balance == 0

    async def test_withdraw_below_minimum(self, session, make_user):
        user = await make_user("alice", balance=80_000)
        account = await Ledger(session).load_account(user.id)
        with pytest.raises(ValidationError, match="Minimum withdrawal"):
            Ledger(session).withdraw(account, 49_999)

    async def test_withdraw_insufficient(self, session, make_user):
        user = await make_user("alice", balance=40_000)
        account = await Ledger(session).load_account(user.id)
        with pytest.raises(InsufficientFundsError):
            Ledger(session).withdraw(account, 50_000)
        assert account.available_balance == 40_000


class TestWithdrawalReview:
    async def _pending(self, session, make_user):
        user = await make_user("alice", balance=100_000)
        admin = await make_user("boss", is_admin=True)
        ledger = Ledger(session)
        account = await ledger.load_account(user.id)
        tx = ledger.withdraw(account, 60_000)
        await session.commit()
        return user, admin, tx

    async def test_approve(self, session, make_user):
        user, admin, tx = await self._pending(session, make_user)
        approved = await Ledger(session).approve_withdrawal(tx.id, admin.id)
        await session.commit()

        assert approved.status == TransactionStatus.APPROVED
        assert approved.processed_by == admin.id
        account = await Ledger(session).load_account(user.id)
        assert account.available_balance == 40_000

    async def test_reject_returns_funds(self, session, make_user):
        user, admin, tx = await self._pending(session, make_user)
        rejected = await Ledger(session).reject_withdrawal(tx.id, admin.id, "Bank details invalid")
        await session.commit()

        assert rejected.status == TransactionStatus.REJECTED
        assert rejected.rejection_reason == "Bank details invalid"
        account = await Ledger(session).load_account(user.id)
        assert account.available_balance == 100_000

    async def test_cannot_process_twice(self, session, make_user):
        _, admin, tx = await self._pending(session, make_user)
        ledger = Ledger(session)
        await ledger.approve_withdrawal(tx.id, admin.id)
        await session.commit()

        with pytest.raises(StateError):
            await ledger.reject_withdrawal(tx.id, admin.id)

    async def test_unknown_withdrawal(self, session, make_user):
        with pytest.raises(NotFoundError):
            await Ledger(session).approve_withdrawal(uuid.uuid4(), uuid.uuid4())


class TestIntegrity:
    async def test_hash_tracks_balance_changes(self, session, make_user):
        user = await make_user("alice", balance=100_000)
        ledger = Ledger(session)
        account = await ledger.load_account(user.id)
        version = account.balance_version

        ledger.deposit(account, 20_000)
        await session.commit()

        assert account.verify_balance_integrity()
        assert account.balance_version == version + 1

    async def test_direct_database_edit_detected(self, session, make_user):
        user = await make_user("alice", balance=100_000)
        await session.execute(
            update(User)
            .where(User.id == user.id)
            .values(available_balance=9_999_999)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        with pytest.raises(BalanceIntegrityError):
            await Ledger(session).load_account(user.id)

    async def test_concurrent_sessions_cannot_lose_an_update(self, session_factory, make_user):
        user = await make_user("alice", balance=100_000)

        async with session_factory() as first, session_factory() as second:
            mine = await Ledger(first).load_account(user.id)
            theirs = await Ledger(second).load_account(user.id)
            Ledger(first).deposit(mine, 10_000)
            Ledger(second).deposit(theirs, 20_000)

            await first.commit()
            with pytest.raises(StaleDataError):
                await second.commit()

        async with session_factory() as fresh:
            account = await Ledger(fresh).load_account(user.id)
            assert account.available_balance == 110_000
            assert account.verify_balance_integrity()

    async def test_unknown_account(self, session):
        with pytest.raises(NotFoundError):
            await Ledger(session).load_account(uuid.uuid4())


class TestPlatformFee:
    async def test_zero_fee_not_recorded(self, session):
        assert Ledger(session).record_platform_fee(0, uuid.uuid4()) is None

    async def test_revenue_sums_fees(self, session, players):
        _, match = await open_match(session, *players)
        ledger = Ledger(session)
        ledger.record_platform_fee(3_000, match.id)
        await session.commit()

        assert await ledger.platform_revenue() == 3_000
        fees = await _transactions(session, kind=TransactionType.PLATFORM_FEE)
        assert fees[0].user_id is None


class TestAccountLocks:
    async def test_serializes_same_account(self):
        locks = AccountLocks()
        order = []

        async def worker(name):
            async with locks.hold("acct"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    async def test_opposite_order_does_not_deadlock(self):
        locks = AccountLocks()

        async def worker(first, second):
            async with locks.hold(first, second):
                await asyncio.sleep(0.01)

        await asyncio.wait_for(asyncio.gather(worker("x", "y"), worker("y", "x")), timeout=1)
        assert not locks.is_locked("x")
        assert not locks.is_locked("y")

    async def test_reentrant_within_task(self):
        locks = AccountLocks()
        async with locks.hold("x", "y"):
            async with locks.hold("y", "x"):
                assert locks.is_locked("x")
            assert locks.is_locked("x")
            assert locks.is_locked("y")
        assert not locks.is_locked("x")
        assert not locks.is_locked("y")

    async def test_outer_hold_covers_commit(self):
        locks = AccountLocks()
        order = []

        async def route():
            async with locks.hold("acct"):
                async with locks.hold("acct"):
                    order.append("service")
                await asyncio.sleep(0.01)
                order.append("commit")

        async def other_request():
            await asyncio.sleep(0)
            async with locks.hold("acct"):
                order.append("other")

        await asyncio.gather(route(), other_request())
        assert order == ["service", "commit", "other"]
