import itertools

import pytest
from fastapi.testclient import TestClient

from nova.database import User, ManualDeposit, PAID, make_engine, init_db
from nova.ledger import money
from nova.main import app, limiter


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return init_db(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    """Insert a user directly. `tier` marks them paid with that tier."""
    counter = itertools.count(1)

    def _make(referrer=None, tier=None, locked=0, withdrawable=0, is_admin=False):
        n = next(counter)
        user = User(
            username             = f"member{n}",
            email                = f"member{n}@example.com",
            password             = "not-a-real-hash",
            is_admin             = is_admin,
            referrer_id          = referrer.id if referrer else None,
            locked_balance       = money(locked),
            withdrawable_balance = money(withdrawable),
        )
        if tier:
            user.tier_id        = tier
            user.payment_status = PAID
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_deposit(db):
    """Insert a pending deposit for a user at the tier's price."""
    counter = itertools.count(1)

    def _make(user, tier_id=7, amount=200):
        deposit = ManualDeposit(
            user_id        = user.id,
            tier_id        = tier_id,
            amount         = money(amount),
            network        = "TRC20",
            transaction_id = f"tx-{next(counter):04d}-" + "f" * 24,
        )
        db.add(deposit)
        db.commit()
        db.refresh(deposit)
        return deposit

    return _make


@pytest.fixture
def client(session_factory):
    app.state.SessionLocal = session_factory
    limiter.enabled = False
    with TestClient(app) as c:
        yield c
    limiter.enabled = True


@pytest.fixture
def login(client):
    """Act as `user` for the following requests (the app's user_id cookie)."""
    def _login(user):
        client.cookies.set("user_id", str(user.id))
    return _login
