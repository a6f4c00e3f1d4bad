import os
import tempfile
import uuid

# Settings are read at import time, so the test database and secrets must be
# in place before anything from fusion_ledger is imported.
_db_dir = tempfile.mkdtemp(prefix="fusion-ledger-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'ledger.db')}"
os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_SECRET"] = "test-jwt-secret-with-enough-length-for-hs256"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from fusion_ledger.auth import create_access_token
from fusion_ledger.db import Base, SessionLocal, engine, get_db
from fusion_ledger.main import app
from fusion_ledger.models import CreditPackage, User


@pytest.fixture(scope="session", autouse=True)
def create_test_schema():
    # Ensure tables (and balance triggers) exist for tests
    Base.metadata.create_all(bind=engine)
    yield
    engine.dispose()


@pytest.fixture
def db_session() -> Session:
    session: Session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_client(db_session: Session) -> TestClient:
    # SQLite transactions take the write lock up front, so the app must share
    # the test's session instead of opening a competing one.
    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session: Session):
    def _make_user(external_id: str = None, email: str = None) -> User:
        external_id = external_id or f"user_{uuid.uuid4().hex[:12]}"
        user = User(external_id=external_id, email=email or f"{external_id}@fusion.dev", credits_balance=0)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def test_user(make_user) -> User:
    return make_user()


@pytest.fixture
def auth_headers(test_user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(test_user.external_id)}"}


@pytest.fixture
def admin_headers() -> dict:
    return {"Authorization": "Bearer test-admin-key"}


@pytest.fixture
def credit_package(db_session: Session) -> CreditPackage:
    package = CreditPackage(
        id=f"pkg_{uuid.uuid4().hex[:8]}",
        name="Standard",
        credits=20,
        price_cents=500,
        currency="eur",
        stripe_price_id=f"price_{uuid.uuid4().hex[:12]}",
        is_active=True,
        sort_order=2,
    )
    db_session.add(package)
    db_session.commit()
    return package
