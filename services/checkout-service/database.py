"""Database connection, session management and the unit-of-work boundary."""
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import CHECKOUT_MAX_ATTEMPTS, DATABASE_URL
from errors import ConflictError, InternalError, ServiceError
from models import Base, Coupon, Product

logger = logging.getLogger(__name__)

# PostgreSQL serialization_failure and deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}


def _engine_options(url: str) -> dict:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        options = {"connect_args": {"check_same_thread": False}}
        if parsed.database in (None, "", ":memory:"):
            # Single shared connection so every session sees the same in-memory database
            options["poolclass"] = StaticPool
        return options

    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,  # Verify connections before use
        "pool_recycle": 3600,  # Recycle connections after 1 hour
        "pool_timeout": 30,  # Wait max 30 seconds for a connection
    }


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

SessionFactory = Callable[[], Session]


def translate_db_error(exc: SQLAlchemyError) -> ServiceError:
    """Map a storage failure onto the service error taxonomy."""
    if isinstance(exc, IntegrityError):
        return ConflictError(f"Write conflict: {exc.orig}")
    if isinstance(exc, OperationalError):
        sqlstate = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
        if sqlstate in RETRYABLE_SQLSTATES:
            return ConflictError(f"Transaction aborted by the database: {sqlstate}")
    return InternalError(f"Storage failure: {exc.__class__.__name__}")


@contextmanager
def transaction(session_factory: Optional[SessionFactory] = None) -> Iterator[Session]:
    """
    Open one unit of work.

    The yielded session is the transaction handle: every repository call made
    with it commits together when the block exits, or not at all if the block
    raises (including when the caller is unwinding after a client abort).

    Raises:
        ConflictError: On unique violations and serialization failures
        InternalError: On any other storage failure
    """
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning("Transaction rolled back after storage error", extra={
            "error_type": exc.__class__.__name__,
        })
        raise translate_db_error(exc) from exc
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()


def transaction_retry(attempts: Optional[int] = None):
    """Re-run a whole unit of work once more when it lost a race or hit a transient failure."""
    return retry(
        reraise=True,
        stop=stop_after_attempt(attempts or CHECKOUT_MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=0.5),
        retry=retry_if_exception_type((ConflictError, InternalError)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )


def init_db(seed: bool = True) -> None:
    """Initialize database tables and seed data."""
    Base.metadata.create_all(bind=engine)

    if not seed:
        return

    db = SessionLocal()
    try:
        if db.query(Product).count() == 0:
            products = [
                Product(title="Laptop", price=Decimal("999.99"), stock=50, category="Electronics", seller_id=4),
                Product(title="Smartphone", price=Decimal("599.99"), stock=100, category="Electronics", seller_id=4),
                Product(title="Headphones", price=Decimal("99.99"), stock=200, category="Electronics", seller_id=4),
                Product(title="Desk Chair", price=Decimal("199.99"), stock=30, category="Furniture", seller_id=4),
                Product(title="Monitor", price=Decimal("299.99"), stock=75, category="Electronics", seller_id=4),
                Product(title="Keyboard", price=Decimal("79.99"), stock=150, category="Electronics", seller_id=4),
            ]
            db.add_all(products)
            logger.info("Seeded database with sample products")

        if db.query(Coupon).count() == 0:
            expires = datetime.now(timezone.utc) + timedelta(days=365)
            coupons = [
                Coupon(code="SAVE20", type="percentage", value=Decimal("20"), min_amount=Decimal("0"),
                       expires_at=expires),
                Coupon(code="FIXED50", type="fixed", value=Decimal("50"), min_amount=Decimal("0"),
                       expires_at=expires),
                Coupon(code="WELCOME10", type="percentage", value=Decimal("10"), min_amount=Decimal("100"),
                       max_discount=Decimal("30"), usage_limit=100, expires_at=expires),
            ]
            db.add_all(coupons)
            logger.info("Seeded database with sample coupons")

        db.commit()
    finally:
        db.close()
