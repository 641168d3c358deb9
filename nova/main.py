import os
import logging
from contextlib import asynccontextmanager
import bleach
from dotenv import load_dotenv
from fastapi import FastAPI, Request, Depends, HTTPException
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from .database import User, PAID, make_engine, init_db
from .errors import LedgerError, InvalidArgument
from .schemas import (
    DepositRequest, WithdrawalRequest, WithdrawalAddressRequest, DepositDecision,
    WithdrawalDecision, SubscribeRequest, AnnouncementRequest
)
from .payment import (
    create_manual_deposit, approve_or_reject_deposit, admin_subscribe_user,
    get_deposit_history, request_withdrawal, approve_or_reject_withdrawal,
    get_withdrawal_history, get_withdrawal_stats, get_user_balance, delete_user,
    set_withdrawal_address, get_withdrawal_address
)
from .ads import record_ad_view, get_ad_stats
from .referral import get_referral_summary
from .revenue import (
    get_stats, recompute_stats, get_revenue_breakdown, get_recent_transactions,
    get_monthly_revenue, validate_integrity, cleanup_invalid_records
)
from .announcements import (
    create_announcement, get_active_announcement, mark_as_viewed, has_seen,
    get_announcement_history
)

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # tests install their own session factory before the app starts
    if getattr(app.state, "SessionLocal", None) is None:
        app.state.SessionLocal = init_db(make_engine())
        logger.info("Ledger store ready")
    yield

app = FastAPI(title="Nova Ledger", lifespan=lifespan)

limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["*"]
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse({"success": False, "error": str(exc)}, status_code=exc.status_code)


# ── DB / Auth helpers ─────────────────────────────────────────
def get_db(request: Request):
    db = request.app.state.SessionLocal()
    try: yield db
    finally: db.close()

def get_current_user(request: Request, db: Session = Depends(get_db)):
    user_id = request.cookies.get("user_id")
    if not user_id: return None
    try: return db.query(User).filter(User.id == int(user_id)).first()
    except ValueError: return None

def is_admin(user): return user is not None and getattr(user, "is_admin", False)

def require_user(user: User = Depends(get_current_user)):
    if not user: raise HTTPException(status_code=401, detail="Not authenticated")
    return user

def require_paid(user: User = Depends(require_user)):
    if user.payment_status != PAID:
        raise HTTPException(status_code=403, detail="Paid subscription required")
    return user

def require_admin(request: Request, user: User = Depends(get_current_user)):
    if not is_admin(user):
        logger.warning(f"Unauthorised admin access, IP: {request.client.host}")
        raise HTTPException(status_code=403, detail="Access denied")
    return user

def sanitize(v): return bleach.clean(v.strip()) if v else ""


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}


# ═══════════════════════════════════════════════════════════════
#  DEPOSITS
# ═══════════════════════════════════════════════════════════════

@app.post("/api/deposits")
@limiter.limit("10/minute")
def submit_deposit(
    request: Request,
    body:    DepositRequest,
    user:    User = Depends(require_user),
    db:      Session = Depends(get_db)
):
    return create_manual_deposit(
        db, user.id, body.tier_id, body.amount,
        sanitize(body.network).upper(), sanitize(body.transaction_id)
    )


@app.get("/api/deposits")
def deposit_history(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {"success": True, "deposits": get_deposit_history(db, user.id)}


# ═══════════════════════════════════════════════════════════════
#  WITHDRAWALS
# ═══════════════════════════════════════════════════════════════

@app.post("/api/withdrawals")
@limiter.limit("5/minute")
def submit_withdrawal(
    request: Request,
    body:    WithdrawalRequest,
    user:    User = Depends(require_paid),
    db:      Session = Depends(get_db)
):
    return request_withdrawal(
        db, user.id, body.amount, sanitize(body.network).upper(), sanitize(body.wallet_address)
    )


@app.get("/api/withdrawals")
def withdrawal_history(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {"success": True, "withdrawals": get_withdrawal_history(db, user.id, limit=20)}


@app.post("/api/withdrawals/address")
def save_withdrawal_address(
    body: WithdrawalAddressRequest,
    user: User = Depends(require_user),
    db:   Session = Depends(get_db)
):
    return set_withdrawal_address(
        db, user.id, sanitize(body.wallet_address), sanitize(body.network).upper()
    )


@app.get("/api/withdrawals/address")
def withdrawal_address(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {"success": True, **get_withdrawal_address(db, user.id)}


@app.get("/api/withdrawals/stats")
def withdrawal_stats(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {"success": True, "stats": get_withdrawal_stats(db, user.id)}


# ═══════════════════════════════════════════════════════════════
#  ADS / DASHBOARD / REFERRALS
# ═══════════════════════════════════════════════════════════════

@app.post("/api/ads/watch")
@limiter.limit("30/minute")
def watch_ad(
    request: Request,
    user:    User = Depends(require_paid),
    db:      Session = Depends(get_db)
):
    """Called by the front-end once an ad has been viewed. Pays the reward."""
    return record_ad_view(db, user.id)


@app.get("/api/ads/stats")
def ad_stats(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {"success": True, "stats": get_ad_stats(db, user.id)}


@app.get("/api/dashboard")
def dashboard(user: User = Depends(require_user), db: Session = Depends(get_db)):
    user_id  = user.id
    username = user.username
    balance  = get_user_balance(db, user_id)
    ads      = get_ad_stats(db, user_id)
    referrals = get_referral_summary(db, user_id)
    announcement = get_active_announcement(db)
    return {
        "success":  True,
        "username": username,
        "balance":  balance,
        "ads":      ads,
        "referrals": {
            "count":         referrals["referralCount"],
            "totalEarnings": referrals["totalEarnings"],
        },
        "announcement": announcement,
        "announcementSeen": has_seen(db, user_id, announcement["id"]) if announcement else True,
    }


@app.get("/api/referrals")
def referrals(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {"success": True, **get_referral_summary(db, user.id)}


# ═══════════════════════════════════════════════════════════════
#  ANNOUNCEMENTS
# ═══════════════════════════════════════════════════════════════

@app.get("/api/announcement/active")
def active_announcement(user: User = Depends(require_user), db: Session = Depends(get_db)):
    announcement = get_active_announcement(db)
    seen = has_seen(db, user.id, announcement["id"]) if announcement else False
    return {"success": True, "announcement": announcement, "hasSeen": seen}


@app.post("/api/announcement/{announcement_id}/view")
def view_announcement(
    announcement_id: int,
    user: User = Depends(require_user),
    db:   Session = Depends(get_db)
):
    mark_as_viewed(db, user.id, announcement_id)
    return {"success": True}


# ═══════════════════════════════════════════════════════════════
#  ADMIN
# ═══════════════════════════════════════════════════════════════

@app.get("/admin/stats")
def admin_stats(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return {"success": True, "stats": get_stats(db)}


@app.post("/admin/stats/recompute")
def admin_recompute_stats(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return {"success": True, "stats": recompute_stats(db)}


@app.patch("/admin/deposit/{deposit_id}")
def admin_decide_deposit(
    deposit_id: int,
    body:  DepositDecision,
    admin: User = Depends(require_admin),
    db:    Session = Depends(get_db)
):
    return approve_or_reject_deposit(
        db, deposit_id, body.status, sanitize(body.admin_notes) or None, admin.id
    )


@app.patch("/admin/withdrawal/{withdrawal_id}")
def admin_decide_withdrawal(
    withdrawal_id: int,
    body:  WithdrawalDecision,
    admin: User = Depends(require_admin),
    db:    Session = Depends(get_db)
):
    return approve_or_reject_withdrawal(
        db, withdrawal_id, body.status, sanitize(body.rejection_reason) or None
    )


@app.delete("/admin/users/{user_id}")
def admin_delete_user(
    user_id: int,
    admin:   User = Depends(require_admin),
    db:      Session = Depends(get_db)
):
    if user_id == admin.id:
        raise InvalidArgument("You cannot delete your own account")
    return {"success": True, **delete_user(db, user_id)}


@app.post("/admin/users/{user_id}/subscribe")
def admin_subscribe(
    user_id: int,
    body:    SubscribeRequest,
    admin:   User = Depends(require_admin),
    db:      Session = Depends(get_db)
):
    return {"success": True, **admin_subscribe_user(db, user_id, body.tier_id)}


@app.get("/admin/revenue-breakdown")
def admin_revenue_breakdown(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return {"success": True, "breakdown": get_revenue_breakdown(db)}


@app.get("/admin/recent-transactions")
def admin_recent_transactions(
    limit: int = 10,
    admin: User = Depends(require_admin),
    db:    Session = Depends(get_db)
):
    return {"success": True, "transactions": get_recent_transactions(db, limit=min(max(limit, 1), 100))}


@app.get("/admin/monthly-revenue")
def admin_monthly_revenue(
    year:  int = None,
    month: int = None,
    admin: User = Depends(require_admin),
    db:    Session = Depends(get_db)
):
    if month is not None and not 1 <= month <= 12:
        raise InvalidArgument("Month must be between 1 and 12")
    return {"success": True, **get_monthly_revenue(db, year, month)}


@app.get("/admin/integrity")
def admin_integrity(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return {"success": True, **validate_integrity(db)}


@app.post("/admin/integrity/cleanup")
def admin_integrity_cleanup(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return {"success": True, **cleanup_invalid_records(db)}


@app.post("/admin/announcement")
def admin_create_announcement(
    body:  AnnouncementRequest,
    admin: User = Depends(require_admin),
    db:    Session = Depends(get_db)
):
    announcement = create_announcement(db, sanitize(body.title), sanitize(body.content), admin.id)
    return {"success": True, "announcement": announcement}


@app.get("/admin/announcements/history")
def admin_announcement_history(
    limit: int = 10,
    admin: User = Depends(require_admin),
    db:    Session = Depends(get_db)
):
    return {"success": True, "announcements": get_announcement_history(db, limit=min(max(limit, 1), 100))}
