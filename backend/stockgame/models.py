from __future__ import annotations
from datetime import datetime, timezone
from sqlalchemy import String, Integer, Numeric, DateTime, ForeignKey, UniqueConstraint, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship
from .db import Base

NUM = Numeric(18, 6)


def utcnow() -> datetime:
    # Naive UTC; every DateTime column here is stored without tzinfo.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(254), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(512))
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    participations: Mapped[list["Participant"]] = relationship(back_populates="user")


class Game(Base):
    __tablename__ = "games"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(160))
    start_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    initial_amount: Mapped[float] = mapped_column(NUM)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    participants: Mapped[list["Participant"]] = relationship(
        back_populates="game",
        order_by="Participant.id",
    )

    def is_closed(self, now: datetime | None = None) -> bool:
        current = now or utcnow()
        return current >= self.end_time


class Participant(Base):
    __tablename__ = "participants"
    __table_args__ = (UniqueConstraint("game_id", "user_id", name="uq_game_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    game_id: Mapped[int] = mapped_column(ForeignKey("games.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    cash: Mapped[float] = mapped_column(NUM, default=0)
    # Bumped on every flush that changes the row; a stale writer matches zero rows.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    game: Mapped["Game"] = relationship(back_populates="participants")
    user: Mapped["User"] = relationship(back_populates="participations")
    holdings: Mapped[list["Holding"]] = relationship(
        back_populates="participant",
        cascade="all, delete-orphan",
        order_by="Holding.symbol",
    )

    __mapper_args__ = {"version_id_col": version}


class Holding(Base):
    __tablename__ = "holdings"
    __table_args__ = (UniqueConstraint("participant_id", "symbol", name="uq_participant_symbol"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    participant_id: Mapped[int] = mapped_column(ForeignKey("participants.id"), index=True)
    symbol: Mapped[str] = mapped_column(ForeignKey("stocks.symbol"), index=True)
    quantity: Mapped[int] = mapped_column(Integer, default=0)

    participant: Mapped["Participant"] = relationship(back_populates="holdings")


class Stock(Base):
    __tablename__ = "stocks"

    symbol: Mapped[str] = mapped_column(String(16), primary_key=True)
    name: Mapped[str] = mapped_column(String(128))
    price: Mapped[float] = mapped_column(NUM)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
    )


class Trade(Base):
    __tablename__ = "trades"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    participant_id: Mapped[int] = mapped_column(ForeignKey("participants.id"), index=True)
    symbol: Mapped[str] = mapped_column(String(16), index=True)

    side: Mapped[str] = mapped_column(String(8))  # BUY, SELL
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price: Mapped[float] = mapped_column(NUM)
    amount: Mapped[float] = mapped_column(NUM)  # cash delta (+ credit, - debit)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
