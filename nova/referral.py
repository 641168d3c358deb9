"""
Nova Referral Commission
========================

  - Flat 5% of every approved deposit goes to the depositor's referrer.
  - Paid only when referrer_id is set; no cap, no minimum, no verification check.
  - Credited straight to withdrawable_balance and total_earnings.
  - Logged as a negative 'referral_payout' entry against the referrer
    (it is a platform expense).

Invoked only from inside a deposit approval transaction.
"""
import logging
from decimal import Decimal
from typing import Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
from .database import (
    User, ManualDeposit, REFERRAL_PCT, APPROVED, PAID, TX_REFERRAL_PAYOUT
)
from .ledger import money, lock_user, update_balances
from .revenue import record_transaction

logger = logging.getLogger(__name__)


def calculate_commission(amount) -> Decimal:
    return money(money(amount) * REFERRAL_PCT)


def apply_referral_commission(
    db:      Session,
    user:    User,
    amount,
    tier_id: int,
) -> Optional[Decimal]:
    """Credit the referrer of `user`. Returns the commission, or None without a referrer."""
    if not user.referrer_id:
        return None

    referrer = lock_user(db, user.referrer_id)
    if referrer is None:
        logger.warning(f"User {user.id} points at missing referrer {user.referrer_id}, no commission")
        return None

    commission = calculate_commission(amount)

    # version-guarded, so an ad reward landing on the referrer meanwhile forces a retry
    update_balances(
        db, referrer,
        withdrawable_balance = money(referrer.withdrawable_balance) + commission,
        total_earnings       = money(referrer.total_earnings) + commission,
    )
    record_transaction(db, referrer.id, tier_id, -commission, TX_REFERRAL_PAYOUT)

    logger.info(f"Referral commission {commission} → user {referrer.id} (from user {user.id})")
    return commission


def get_referral_summary(db: Session, user_id: int) -> dict:
    """Referred users with their approved spend, plus totals for the referrer."""
    approved = db.query(
        ManualDeposit.user_id,
        func.sum(ManualDeposit.amount).label("total_paid"),
    ).filter(ManualDeposit.status == APPROVED).group_by(ManualDeposit.user_id).subquery()

    rows = db.query(User, approved.c.total_paid).outerjoin(
        approved, approved.c.user_id == User.id
    ).filter(User.referrer_id == user_id).order_by(User.created_at.desc(), User.id.desc()).all()

    referred = []
    total_earnings = money(0)
    successful = 0
    for referred_user, total_paid in rows:
        spent = money(total_paid or 0)
        earned = calculate_commission(spent) if referred_user.payment_status == PAID else money(0)
        if total_paid:
            successful += 1
            total_earnings += calculate_commission(spent)
        referred.append({
            "id":                referred_user.id,
            "username":          referred_user.username,
            "email":             referred_user.email,
            "created_at":        referred_user.created_at,
            "tier_id":           referred_user.tier_id,
            "payment_status":    referred_user.payment_status,
            "total_spent":       spent,
            "referral_earnings": earned,
        })

    return {
        "referredUsers":           referred,
        "totalEarnings":           money(total_earnings),
        "referralCount":           len(rows),
        "successfulReferralCount": successful,
        "pendingReferralCount":    len(rows) - successful,
    }
