import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["PLATFORM_FEE_BPS"] = "500"
os.environ["REPORTING_CURRENCY"] = "usd"
os.environ["REVENUE_INVOICE_SOURCE"] = "provider"
os.environ.pop("SENDGRID_API_KEY", None)
os.environ.pop("MAIL_FROM", None)

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

import models.models  # noqa: F401


# ============================================================
# Database
# ============================================================
@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return lambda: Session(engine)


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session
