import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


RENTAL_BILLING_DB_URL = _require_env("RENTAL_BILLING_DB_URL")

engine_billing = create_engine(
    RENTAL_BILLING_DB_URL,
    pool_pre_ping=True,
    future=True,
)

SessionLocalBilling = sessionmaker(
    bind=engine_billing,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
