# ═══════════════════════════════════════════════════════════════
# Nova: Deposits, Withdrawals & Account Removal
# Manual USDT deposits approved by admin → tier + referral commission
# ═══════════════════════════════════════════════════════════════
import logging
from decimal import Decimal, InvalidOperation
from datetime import datetime
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from .database import (
    User, Tier, ManualDeposit, Withdrawal, Announcement, AnnouncementView,
    PENDING, APPROVED, REJECTED, PAID, DECISIONS,
    TX_SUBSCRIPTION, MIN_WITHDRAWAL, DEPOSIT_NETWORKS, WITHDRAWAL_NETWORKS
)
from .errors import NotFound, Conflict, InsufficientFunds, InvalidArgument
from .ledger import atomic, money, retry_on_contention, lock_user, update_balances
from .referral import apply_referral_commission
from .revenue import record_transaction, refresh_stats_cache, remove_user_transactions

logger = logging.getLogger(__name__)

MIN_TRANSACTION_ID_LENGTH = 20
MIN_WALLET_ADDRESS_LENGTH = 10


def _parse_amount(amount) -> Decimal:
    try:
        value = money(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidArgument(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise InvalidArgument(f"Invalid amount: {amount!r}")
    return value


def _check_decision(decision: str):
    if decision not in DECISIONS:
        raise InvalidArgument('Invalid status. Must be "approved" or "rejected"')


# ── Manual deposits ───────────────────────────────────────────

@retry_on_contention
def create_manual_deposit(
    db:             Session,
    user_id:        int,
    tier_id:        int,
    amount,
    network:        str,
    transaction_id: str,
) -> dict:
    """User claims an off-chain tier payment. Admin confirms it later."""
    amount = _parse_amount(amount)
    if amount < 1:
        raise InvalidArgument("Invalid amount")
    if network not in DEPOSIT_NETWORKS:
        raise InvalidArgument(f"Invalid network. Must be {', '.join(DEPOSIT_NETWORKS)}")
    transaction_id = (transaction_id or "").strip()
    if len(transaction_id) < MIN_TRANSACTION_ID_LENGTH:
        raise InvalidArgument("Invalid transaction ID format")

    with atomic(db):
        user = db.get(User, user_id)
        if not user:
            raise NotFound(f"User {user_id} not found")

        tier = db.get(Tier, tier_id)
        if not tier:
            raise InvalidArgument("Tier not found")
        if amount != money(tier.price):
            raise InvalidArgument(f"Amount mismatch. Expected: {money(tier.price)}, Received: {amount}")

        if user.tier_id == tier_id and user.payment_status == PAID:
            raise Conflict("You already have this tier")

        if db.query(ManualDeposit).filter(ManualDeposit.transaction_id == transaction_id).first():
            raise Conflict("Transaction ID already exists in our system")

        deposit = ManualDeposit(
            user_id        = user_id,
            tier_id        = tier_id,
            amount         = amount,
            network        = network,
            transaction_id = transaction_id,
            status         = PENDING,
        )
        db.add(deposit)
        try:
            db.flush()
        except IntegrityError as e:
            raise Conflict("Transaction ID already exists in our system") from e
        deposit_id = deposit.id

    logger.info(f"Manual deposit #{deposit_id}: user={user_id} tier={tier_id} amount={amount} via {network}")
    return {
        "success":   True,
        "message":   "Deposit submitted successfully! Admin will review within 24 hours.",
        "depositId": deposit_id,
        "status":    PENDING,
    }


@retry_on_contention
def approve_or_reject_deposit(
    db:          Session,
    deposit_id:  int,
    decision:    str,
    admin_notes: str = None,
    admin_id:    int = None,
) -> dict:
    """
    Terminal transition of a pending deposit. On approval the user gets the
    tier, locked_balance is set to the deposit amount (overwrite, current tier
    principal only), a subscription entry is logged and the referrer is paid.
    """
    _check_decision(decision)
    notes = admin_notes or ("Approved by admin" if decision == APPROVED else "Rejected by admin")

    with atomic(db):
        deposit = db.query(ManualDeposit).filter(
            ManualDeposit.id == deposit_id
        ).with_for_update().first()
        if not deposit:
            raise NotFound(f"Deposit {deposit_id} not found")
        if deposit.status != PENDING:
            raise Conflict("Deposit has already been processed")

        now = datetime.utcnow()
        claimed = db.execute(
            update(ManualDeposit)
            .where(ManualDeposit.id == deposit_id, ManualDeposit.status == PENDING)
            .values(status=decision, admin_notes=notes, approved_by=admin_id,
                    approved_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            raise Conflict("Deposit has already been processed")

        amount     = money(deposit.amount)
        commission = None
        if decision == APPROVED:
            user = lock_user(db, deposit.user_id)
            if not user:
                raise NotFound(f"User {deposit.user_id} not found")

            update_balances(db, user, tier_id=deposit.tier_id, payment_status=PAID, locked_balance=amount)

            record_transaction(db, user.id, deposit.tier_id, amount, TX_SUBSCRIPTION)
            commission = apply_referral_commission(db, user, amount, deposit.tier_id)

        refresh_stats_cache(db)

    logger.info(f"Deposit #{deposit_id} {decision} by admin {admin_id} (amount={amount})")
    message = (
        "Deposit approved successfully! User now has access to their tier."
        if decision == APPROVED else "Deposit rejected successfully."
    )
    return {
        "success":            True,
        "message":            message,
        "depositId":          deposit_id,
        "status":             decision,
        "amount":             amount,
        "adminNotes":         notes,
        "referralCommission": commission,
    }


@retry_on_contention
def admin_subscribe_user(db: Session, user_id: int, tier_id: int) -> dict:
    """Grant a tier directly, bypassing the deposit flow. No referral commission."""
    with atomic(db):
        tier = db.get(Tier, tier_id)
        if not tier:
            raise InvalidArgument("Tier not found")
        user = lock_user(db, user_id)
        if not user:
            raise NotFound(f"User {user_id} not found")

        price = money(tier.price)
        update_balances(db, user, tier_id=tier_id, payment_status=PAID, locked_balance=price)
        record_transaction(db, user_id, tier_id, price, TX_SUBSCRIPTION)
        refresh_stats_cache(db)
        username = user.username

    logger.info(f"Admin subscribed user {user_id} to tier {tier_id} ({price})")
    return {
        "message": f"User {username} subscribed to Tier {tier_id} successfully",
        "amount":  price,
        "tier":    tier_id,
    }


def get_deposit_history(db: Session, user_id: int) -> list:
    rows = db.query(ManualDeposit, Tier.price).outerjoin(
        Tier, ManualDeposit.tier_id == Tier.id
    ).filter(ManualDeposit.user_id == user_id).order_by(
        ManualDeposit.created_at.desc(), ManualDeposit.id.desc()
    ).all()
    return [
        {
            "id":             d.id,
            "tier_id":        d.tier_id,
            "tier_price":     money(price) if price is not None else None,
            "amount":         money(d.amount),
            "network":        d.network,
            "transaction_id": d.transaction_id,
            "status":         d.status,
            "admin_notes":    d.admin_notes,
            "approved_at":    d.approved_at,
            "created_at":     d.created_at,
        }
        for d, price in rows
    ]


# ── Saved withdrawal address ──────────────────────────────────

@retry_on_contention
def set_withdrawal_address(db: Session, user_id: int, wallet_address: str, network: str) -> dict:
    """Remember where the user wants payouts sent. Balances are not touched."""
    if not wallet_address or not network:
        raise InvalidArgument("Wallet address and network are required")
    address = wallet_address.strip()
    if len(address) < MIN_WALLET_ADDRESS_LENGTH:
        raise InvalidArgument("Invalid wallet address format")
    if network not in WITHDRAWAL_NETWORKS:
        raise InvalidArgument(f"Invalid network. Use {', '.join(WITHDRAWAL_NETWORKS[:-1])}, or {WITHDRAWAL_NETWORKS[-1]}")

    with atomic(db):
        saved = db.execute(
            update(User)
            .where(User.id == user_id)
            .values(wallet_address=address, wallet_network=network, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount
        if saved != 1:
            raise NotFound("User not found")

    logger.info(f"Withdrawal address updated for user {user_id} ({network})")
    return {
        "success":       True,
        "message":       "Withdrawal address updated successfully",
        "walletAddress": address,
        "network":       network,
    }


def get_withdrawal_address(db: Session, user_id: int) -> dict:
    row = db.query(User.wallet_address, User.wallet_network).filter(User.id == user_id).first()
    if row is None:
        raise NotFound("User not found")
    return {"walletAddress": row.wallet_address, "network": row.wallet_network}


# ── Withdrawal request ────────────────────────────────────────

@retry_on_contention
def request_withdrawal(
    db:             Session,
    user_id:        int,
    amount,
    network:        str,
    wallet_address: str,
) -> dict:
    """Reserve `amount` out of withdrawable_balance and queue it for admin review."""
    amount = _parse_amount(amount)
    if amount < MIN_WITHDRAWAL:
        raise InvalidArgument(f"Minimum withdrawal amount is ${MIN_WITHDRAWAL}")
    if network not in WITHDRAWAL_NETWORKS:
        raise InvalidArgument(f"Invalid network. Use {', '.join(WITHDRAWAL_NETWORKS)}")
    address = (wallet_address or "").strip()
    if len(address) < MIN_WALLET_ADDRESS_LENGTH:
        raise InvalidArgument("Invalid wallet address format")

    with atomic(db):
        user = lock_user(db, user_id)
        if not user:
            raise NotFound(f"User {user_id} not found")

        # same 6 dp figure get_user_balance reports
        available = money(user.withdrawable_balance)
        if available < amount:
            raise InsufficientFunds(
                f"Insufficient balance. Available: ${available:.2f}, Requested: ${amount:.2f}"
            )
        update_balances(db, user, withdrawable_balance=available - amount)

        withdrawal = Withdrawal(
            user_id        = user_id,
            amount         = amount,
            network        = network,
            wallet_address = address,
            status         = PENDING,
        )
        db.add(withdrawal)
        db.flush()
        withdrawal_id = withdrawal.id
        refresh_stats_cache(db)

    logger.info(f"Withdrawal #{withdrawal_id} requested: user={user_id} amount={amount} via {network}")
    return {
        "success":      True,
        "message":      "Withdrawal request submitted successfully! It will be processed within 24-48 hours.",
        "withdrawalId": withdrawal_id,
        "amount":       amount,
        "network":      network,
        "status":       PENDING,
    }


@retry_on_contention
def approve_or_reject_withdrawal(
    db:               Session,
    withdrawal_id:    int,
    decision:         str,
    rejection_reason: str = None,
) -> dict:
    """
    Approval only bumps total_withdrawal (funds left the pool at request time).
    Rejection hands the reserved amount back to withdrawable_balance.
    """
    _check_decision(decision)
    reason = (rejection_reason or "No reason provided") if decision == REJECTED else None

    with atomic(db):
        withdrawal = db.query(Withdrawal).filter(
            Withdrawal.id == withdrawal_id
        ).with_for_update().first()
        if not withdrawal:
            raise NotFound(f"Withdrawal {withdrawal_id} not found")
        if withdrawal.status != PENDING:
            raise Conflict("Withdrawal has already been processed")

        claimed = db.execute(
            update(Withdrawal)
            .where(Withdrawal.id == withdrawal_id, Withdrawal.status == PENDING)
            .values(status=decision, rejection_reason=reason, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            raise Conflict("Withdrawal has already been processed")

        amount = money(withdrawal.amount)
        user = lock_user(db, withdrawal.user_id)
        if user is not None:
            if decision == APPROVED:
                update_balances(db, user, total_withdrawal=money(user.total_withdrawal) + amount)
            else:
                update_balances(db, user, withdrawable_balance=money(user.withdrawable_balance) + amount)
        refresh_stats_cache(db)

    logger.info(f"Withdrawal #{withdrawal_id} {decision} (amount={amount})")
    message = (
        "Withdrawal approved successfully! The user will receive their funds."
        if decision == APPROVED
        else "Withdrawal rejected successfully! Funds returned to user's balance."
    )
    return {
        "success":         True,
        "message":         message,
        "withdrawalId":    withdrawal_id,
        "status":          decision,
        "amount":          amount,
        "rejectionReason": reason,
    }


def get_withdrawal_history(db: Session, user_id: int, limit: int = 20) -> list:
    rows = db.query(Withdrawal).filter(Withdrawal.user_id == user_id).order_by(
        Withdrawal.created_at.desc(), Withdrawal.id.desc()
    ).limit(limit).all()
    return [
        {
            "id":               w.id,
            "amount":           money(w.amount),
            "network":          w.network,
            "wallet_address":   w.wallet_address,
            "status":           w.status,
            "rejection_reason": w.rejection_reason,
            "created_at":       w.created_at,
            "updated_at":       w.updated_at,
        }
        for w in rows
    ]


def get_withdrawal_stats(db: Session, user_id: int) -> dict:
    rows = db.query(Withdrawal).filter(Withdrawal.user_id == user_id).all()

    def by_status(status):
        return [w for w in rows if w.status == status]

    return {
        "total_withdrawals":      len(rows),
        "pending_withdrawals":    len(by_status(PENDING)),
        "approved_withdrawals":   len(by_status(APPROVED)),
        "rejected_withdrawals":   len(by_status(REJECTED)),
        "total_amount_requested": money(sum((w.amount for w in rows), money(0))),
        "total_amount_approved":  money(sum((w.amount for w in by_status(APPROVED)), money(0))),
    }


# ── Balance helpers ───────────────────────────────────────────

def get_user_balance(db: Session, user_id: int) -> dict:
    user = db.get(User, user_id)
    if not user:
        raise NotFound(f"User {user_id} not found")
    locked       = money(user.locked_balance)
    withdrawable = money(user.withdrawable_balance)
    return {
        "tier_id":              user.tier_id,
        "payment_status":       user.payment_status,
        "locked_balance":       locked,
        "withdrawable_balance": withdrawable,
        "total_balance":        locked + withdrawable,
        "total_earnings":       money(user.total_earnings),
        "total_withdrawal":     money(user.total_withdrawal),
    }


# ── Account removal ───────────────────────────────────────────

@retry_on_contention
def delete_user(db: Session, user_id: int) -> dict:
    """Remove a user with their log rows, deposits and withdrawals, then recompute stats."""
    with atomic(db):
        user = db.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        username = user.username

        removed = remove_user_transactions(db, user_id)
        db.query(ManualDeposit).filter(ManualDeposit.user_id == user_id).delete(synchronize_session=False)
        db.query(Withdrawal).filter(Withdrawal.user_id == user_id).delete(synchronize_session=False)
        db.query(AnnouncementView).filter(AnnouncementView.user_id == user_id).delete(synchronize_session=False)

        # non-owning references
        db.query(User).filter(User.referrer_id == user_id).update(
            {User.referrer_id: None}, synchronize_session=False)
        db.query(ManualDeposit).filter(ManualDeposit.approved_by == user_id).update(
            {ManualDeposit.approved_by: None}, synchronize_session=False)
        db.query(Announcement).filter(Announcement.created_by == user_id).update(
            {Announcement.created_by: None}, synchronize_session=False)

        db.delete(user)
        db.flush()
        refresh_stats_cache(db)

    logger.info(
        f"Deleted user {user_id} ({username}): {removed['transactionsDeleted']} transactions, "
        f"revenue removed {removed['revenueRemoved']}"
    )
    return {
        "message":             f"User {username} deleted successfully",
        "revenueRemoved":      removed["revenueRemoved"],
        "transactionsDeleted": removed["transactionsDeleted"],
        "username":            username,
    }
