import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _env_flag(name: str) -> bool:
    return (os.environ.get(name) or "").strip().lower() in {"1", "true", "yes", "on"}


def engine_options(url: str) -> dict:
    """Keyword arguments for ``create_engine`` given the rental database URL."""
    options = {"future": True, "echo": _env_flag("RENTAL_MARKET_DB_ECHO")}
    if url.startswith("sqlite"):
        # Shared across request worker threads.
        options["connect_args"] = {"check_same_thread": False}
    else:
        options["pool_pre_ping"] = True
        options["pool_recycle"] = int(os.environ.get("RENTAL_MARKET_DB_POOL_RECYCLE", "1800"))
    return options


RENTAL_MARKET_DB_URL = _require_env("RENTAL_MARKET_DB_URL")

engine_rental = create_engine(RENTAL_MARKET_DB_URL, **engine_options(RENTAL_MARKET_DB_URL))

# Engine operations flush; the route layer decides when a unit of work commits.
SessionLocalRental = sessionmaker(
    bind=engine_rental,
    autoflush=False,
    expire_on_commit=False,
    future=True,
)
