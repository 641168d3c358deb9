"""
Concurrency tests against a file-backed SQLite ledger

Each worker thread owns its own session, as each HTTP request does.
"""

import threading
from decimal import Decimal

from nova.ads import record_ad_view, calculate_compound_earnings
from nova.database import User, Withdrawal, RevenueTracking, APPROVED, DAILY_AD_LIMIT
from nova.errors import Conflict, DailyLimitReached, InsufficientFunds, Internal
from nova.payment import approve_or_reject_deposit, request_withdrawal


def run_threads(count, target):
    threads = [threading.Thread(target=target, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()


def resubmit(call):
    """Repeat a call that ran out of contention retries, as a client would."""
    while True:
        try:
            return call()
        except Internal:
            continue


class TestConcurrentWorkflows:
    """Guarded and compare-and-swap updates under parallel callers."""

    def test_parallel_withdrawals_never_overdraw(self, db, session_factory, make_user):
        """10 x 15 against a balance of 100: exactly 6 succeed."""
        user = make_user(tier=1, withdrawable=100)
        outcomes = []
        lock = threading.Lock()

        def worker(i):
            session = session_factory()
            try:
                resubmit(lambda: request_withdrawal(session, user.id, 15, "TRC20", f"TXYZ-wallet-{i:04d}"))
                outcome = "ok"
            except InsufficientFunds:
                outcome = "insufficient"
            finally:
                session.close()
            with lock:
                outcomes.append(outcome)

        run_threads(10, worker)

        assert outcomes.count("ok") == 6
        assert outcomes.count("insufficient") == 4
        db.refresh(user)
        assert user.withdrawable_balance == Decimal("10")
        assert db.query(Withdrawal).count() == 6

    def test_parallel_approvals_apply_once(self, db, session_factory, make_user, make_deposit):
        """Five admins approving one deposit: one wins, the rest see Conflict."""
        referrer = make_user()
        user = make_user(referrer=referrer)
        deposit = make_deposit(user, amount=200)
        outcomes = []
        lock = threading.Lock()

        def worker(i):
            session = session_factory()
            try:
                resubmit(lambda: approve_or_reject_deposit(session, deposit.id, APPROVED))
                outcome = "ok"
            except Conflict:
                outcome = "conflict"
            finally:
                session.close()
            with lock:
                outcomes.append(outcome)

        run_threads(5, worker)

        assert outcomes.count("ok") == 1
        assert outcomes.count("conflict") == 4
        db.refresh(referrer)
        assert referrer.withdrawable_balance == Decimal("10")
        assert db.query(RevenueTracking).count() == 2

    def test_parallel_ad_views_respect_limit(self, db, session_factory, make_user):
        """Views from several threads stop at 20 and compound as if sequential."""
        user = make_user(tier=4, locked=100)
        successes = []
        lock = threading.Lock()

        def worker(i):
            session = session_factory()
            try:
                while True:
                    try:
                        record_ad_view(session, user.id)
                    except DailyLimitReached:
                        return
                    except Internal:
                        continue
                    with lock:
                        successes.append(i)
            finally:
                session.close()

        run_threads(4, worker)

        assert len(successes) == DAILY_AD_LIMIT
        db.refresh(user)
        expected = calculate_compound_earnings(Decimal("100"), clicks=DAILY_AD_LIMIT)
        assert user.ad_views_today == DAILY_AD_LIMIT
        assert user.locked_balance + user.withdrawable_balance == expected["finalBalance"]

    def test_reward_and_commission_both_land(self, db, session_factory, make_user, make_deposit):
        """A referral credit racing an ad view on the referrer is not lost."""
        referrer = make_user(tier=4, locked=100)
        referred = make_user(referrer=referrer)
        deposit = make_deposit(referred, amount=200)
        rewards = []

        def worker(i):
            session = session_factory()
            try:
                if i == 0:
                    resubmit(lambda: approve_or_reject_deposit(session, deposit.id, APPROVED))
                else:
                    rewards.append(resubmit(lambda: record_ad_view(session, referrer.id))["reward"])
            finally:
                session.close()

        run_threads(2, worker)

        db.refresh(referrer)
        assert referrer.withdrawable_balance == Decimal("10") + rewards[0]
        assert referrer.total_earnings == Decimal("10") + rewards[0]
