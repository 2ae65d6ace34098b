from collections.abc import Generator

from sqlalchemy.orm import Session

from rental_market.db.session import SessionLocalRental


def get_rental_db() -> Generator[Session, None, None]:
    """One session per request; anything left uncommitted by a failed request is rolled back."""
    db = SessionLocalRental()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
