import logging
import time

from sqlalchemy import select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .auth import hash_password
from .config import Settings
from .db import Base
from .models import Stock, User

logger = logging.getLogger(__name__)

STOCK_CATALOG: list[dict[str, object]] = [
    # Technology
    {"symbol": "AAPL", "name": "Apple Inc.", "price": 189.50},
    {"symbol": "MSFT", "name": "Microsoft Corporation", "price": 415.20},
    {"symbol": "GOOGL", "name": "Alphabet Inc. Class A", "price": 152.80},
    {"symbol": "AMZN", "name": "Amazon.com Inc.", "price": 178.30},
    {"symbol": "META", "name": "Meta Platforms Inc.", "price": 492.60},
    {"symbol": "NVDA", "name": "NVIDIA Corporation", "price": 875.40},
    {"symbol": "TSLA", "name": "Tesla Inc.", "price": 175.20},
    {"symbol": "NFLX", "name": "Netflix Inc.", "price": 612.10},
    {"symbol": "ORCL", "name": "Oracle Corporation", "price": 124.70},
    {"symbol": "INTC", "name": "Intel Corporation", "price": 35.60},
    # Financials
    {"symbol": "JPM", "name": "JPMorgan Chase & Co.", "price": 196.40},
    {"symbol": "BAC", "name": "Bank of America Corporation", "price": 37.10},
    {"symbol": "V", "name": "Visa Inc.", "price": 279.90},
    {"symbol": "GS", "name": "The Goldman Sachs Group Inc.", "price": 412.30},
    # Consumer & industrials
    {"symbol": "KO", "name": "The Coca-Cola Company", "price": 60.20},
    {"symbol": "PEP", "name": "PepsiCo Inc.", "price": 169.80},
    {"symbol": "MCD", "name": "McDonald's Corporation", "price": 271.50},
    {"symbol": "NKE", "name": "Nike Inc.", "price": 93.40},
    {"symbol": "DIS", "name": "The Walt Disney Company", "price": 112.60},
    {"symbol": "BA", "name": "The Boeing Company", "price": 184.90},
    # Energy & healthcare
    {"symbol": "XOM", "name": "Exxon Mobil Corporation", "price": 118.30},
    {"symbol": "CVX", "name": "Chevron Corporation", "price": 156.10},
    {"symbol": "JNJ", "name": "Johnson & Johnson", "price": 155.70},
    {"symbol": "PFE", "name": "Pfizer Inc.", "price": 27.80},
]


def init_db(engine: Engine, wait_seconds: int = 30) -> None:
    # Wait for the database to accept connections
    for attempt in range(wait_seconds):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            break
        except OperationalError:
            logger.info("Database not ready (attempt %d/%d)", attempt + 1, wait_seconds)
            time.sleep(1)
    else:
        raise RuntimeError(f"Database not ready after {wait_seconds} seconds")

    Base.metadata.create_all(bind=engine)


def seed_admin(db: Session, settings: Settings) -> User:
    email = settings.admin_email.strip().lower()
    admin = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if admin is None:
        admin = User(
            email=email,
            password_hash=hash_password(
                settings.admin_password,
                iterations=settings.password_pbkdf2_iterations,
                salt_bytes=settings.password_salt_bytes,
            ),
            is_admin=True,
        )
        db.add(admin)
        logger.info("Seeded admin user %s", email)
    elif not admin.is_admin:
        admin.is_admin = True
    return admin


def seed_stocks(db: Session) -> int:
    existing = set(db.execute(select(Stock.symbol)).scalars().all())
    # Existing prices are left alone so restarts do not reset the market.
    new_stocks = [
        Stock(symbol=str(row["symbol"]), name=str(row["name"]), price=float(row["price"]))
        for row in STOCK_CATALOG
        if row["symbol"] not in existing
    ]
    if new_stocks:
        db.add_all(new_stocks)
        logger.info("Seeded %d stocks", len(new_stocks))
    return len(new_stocks)


def seed(db: Session, settings: Settings) -> None:
    seed_admin(db, settings)
    if settings.seed_stocks:
        seed_stocks(db)
    db.commit()
