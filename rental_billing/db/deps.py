from collections.abc import Generator

from .session import SessionLocalBilling


def get_billing_db() -> Generator:
    db = SessionLocalBilling()
    try:
        yield db
    finally:
        db.close()
