import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import (
    ApiError,
    ConflictError,
    GameClosedError,
    InsufficientFundsError,
    InsufficientHoldingsError,
    NotFoundError,
    ValidationError,
)
from .models import Game, Holding, Participant, Stock, Trade
from .pricing import cost_to_buy, current_price, normalize_symbol, proceeds_to_sell

logger = logging.getLogger(__name__)

BUY = "BUY"
SELL = "SELL"
MAX_PAGE_LIMIT = 100
MAX_ROW_ID = 2**63 - 1


@dataclass
class TradeResult:
    participant: Participant
    side: str
    symbol: str
    quantity: int
    unit_price: Decimal
    total: Decimal


@dataclass
class PositionValue:
    symbol: str
    quantity: int
    price: Decimal
    market_value: Decimal


@dataclass
class PortfolioSnapshot:
    participant: Participant
    cash: Decimal
    holdings_value: Decimal
    equity: Decimal
    positions: list[PositionValue]


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def holdings_map(participant: Participant) -> dict[str, int]:
    return {holding.symbol: int(holding.quantity) for holding in participant.holdings if holding.quantity > 0}


def create_game(
    db: Session,
    name: str,
    start_time: datetime,
    end_time: datetime,
    initial_amount: Decimal,
    created_by: int | None = None,
) -> Game:
    clean_name = " ".join((name or "").split())
    if not clean_name:
        raise ValidationError("name is required")
    start = to_naive_utc(start_time)
    end = to_naive_utc(end_time)
    if end <= start:
        raise ValidationError("endTime must be after startTime")
    if initial_amount <= 0:
        raise ValidationError("initialAmount must be > 0")

    game = Game(
        name=clean_name,
        start_time=start,
        end_time=end,
        initial_amount=float(initial_amount),
        created_by=created_by,
    )
    db.add(game)
    db.commit()
    logger.info("Game %s created (%s, initial amount %s)", game.id, clean_name, initial_amount)
    return game


def get_game_or_raise(db: Session, game_id: int) -> Game:
    # Ids outside the 64-bit column range cannot exist.
    if not 1 <= game_id <= MAX_ROW_ID:
        raise NotFoundError("Game not found")
    game = db.get(Game, game_id)
    if game is None:
        raise NotFoundError("Game not found")
    return game


def list_games(db: Session, page: int, limit: int) -> tuple[list[Game], int]:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_LIMIT}")

    total = int(db.execute(select(func.count()).select_from(Game)).scalar_one())
    if (page - 1) * limit >= total:
        return [], total
    games = db.execute(
        select(Game)
        .order_by(Game.created_at.desc(), Game.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return list(games), total


def ensure_game_open_or_raise(game: Game, now: datetime | None = None) -> None:
    if game.is_closed(now):
        raise GameClosedError("Game has ended")


def get_participant_or_raise(db: Session, game_id: int, user_id: int) -> Participant:
    participant = db.execute(
        select(Participant).where(
            Participant.game_id == game_id,
            Participant.user_id == user_id,
        )
    ).scalar_one_or_none()
    if participant is None:
        raise NotFoundError("Not registered for this game")
    return participant


def register(db: Session, game_id: int, user_id: int, now: datetime | None = None) -> Participant:
    game = get_game_or_raise(db, game_id)
    ensure_game_open_or_raise(game, now)

    existing = db.execute(
        select(Participant.id).where(
            Participant.game_id == game.id,
            Participant.user_id == user_id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("User already registered for this game")

    participant = Participant(
        game_id=game.id,
        user_id=user_id,
        cash=float(Decimal(str(game.initial_amount))),
    )
    db.add(participant)
    try:
        db.commit()
    except IntegrityError as exc:
        # Lost the race against a concurrent registration for the same pair.
        db.rollback()
        raise ConflictError("User already registered for this game") from exc

    logger.info("User %s registered for game %s", user_id, game.id)
    return participant


def validate_quantity(quantity: object) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")
    return quantity


def _load_for_trade(
    db: Session,
    game_id: int,
    user_id: int,
    symbol: str,
    now: datetime | None,
) -> tuple[Participant, Holding | None, Decimal]:
    game = get_game_or_raise(db, game_id)
    ensure_game_open_or_raise(game, now)
    participant = get_participant_or_raise(db, game.id, user_id)
    price = current_price(db, symbol)
    holding = next((h for h in participant.holdings if h.symbol == symbol), None)
    return participant, holding, price


def _apply_buy(
    db: Session,
    game_id: int,
    user_id: int,
    symbol: str,
    qty: int,
    now: datetime | None,
) -> TradeResult:
    participant, holding, price = _load_for_trade(db, game_id, user_id, symbol, now)

    total_cost = cost_to_buy(price, qty)
    cash = Decimal(str(participant.cash))
    if total_cost > cash:
        raise InsufficientFundsError(
            f"Insufficient funds. Need {float(total_cost):.2f}, have {float(cash):.2f}"
        )

    participant.cash = float(cash - total_cost)
    if holding is None:
        participant.holdings.append(Holding(symbol=symbol, quantity=qty))
    else:
        holding.quantity = int(holding.quantity) + qty

    db.add(
        Trade(
            participant_id=participant.id,
            symbol=symbol,
            side=BUY,
            quantity=qty,
            unit_price=float(price),
            amount=float(-total_cost),
        )
    )
    return TradeResult(
        participant=participant,
        side=BUY,
        symbol=symbol,
        quantity=qty,
        unit_price=price,
        total=total_cost,
    )


def _apply_sell(
    db: Session,
    game_id: int,
    user_id: int,
    symbol: str,
    qty: int,
    now: datetime | None,
) -> TradeResult:
    participant, holding, price = _load_for_trade(db, game_id, user_id, symbol, now)

    owned = int(holding.quantity) if holding is not None else 0
    if qty > owned:
        raise InsufficientHoldingsError(f"Trying to sell {qty} {symbol} but only own {owned}")

    proceeds = proceeds_to_sell(price, qty)
    cash = Decimal(str(participant.cash))
    participant.cash = float(cash + proceeds)

    remaining = owned - qty
    if remaining == 0:
        participant.holdings.remove(holding)
    else:
        holding.quantity = remaining

    db.add(
        Trade(
            participant_id=participant.id,
            symbol=symbol,
            side=SELL,
            quantity=qty,
            unit_price=float(price),
            amount=float(proceeds),
        )
    )
    return TradeResult(
        participant=participant,
        side=SELL,
        symbol=symbol,
        quantity=qty,
        unit_price=price,
        total=proceeds,
    )


def _settle(
    db: Session,
    apply,
    game_id: int,
    user_id: int,
    raw_symbol: str,
    quantity: object,
    max_attempts: int,
    now: datetime | None,
) -> TradeResult:
    symbol = normalize_symbol(raw_symbol)
    qty = validate_quantity(quantity)

    for attempt in range(1, max_attempts + 1):
        try:
            result = apply(db, game_id, user_id, symbol, qty, now)
            db.commit()
        except (StaleDataError, IntegrityError):
            # Another settlement committed first; reload and re-check against fresh state.
            db.rollback()
            logger.info(
                "Settlement conflict for user %s in game %s (attempt %d/%d)",
                user_id,
                game_id,
                attempt,
                max_attempts,
            )
            continue
        except ApiError:
            db.rollback()
            raise

        logger.info(
            "%s %d %s @ %s for user %s in game %s",
            result.side,
            qty,
            symbol,
            result.unit_price,
            user_id,
            game_id,
        )
        return result

    raise ConflictError("Concurrent update, please retry")


def buy(
    db: Session,
    game_id: int,
    user_id: int,
    symbol: str,
    quantity: int,
    max_attempts: int = 5,
    now: datetime | None = None,
) -> TradeResult:
    return _settle(db, _apply_buy, game_id, user_id, symbol, quantity, max_attempts, now)


def sell(
    db: Session,
    game_id: int,
    user_id: int,
    symbol: str,
    quantity: int,
    max_attempts: int = 5,
    now: datetime | None = None,
) -> TradeResult:
    return _settle(db, _apply_sell, game_id, user_id, symbol, quantity, max_attempts, now)


def build_portfolio_snapshot(db: Session, game_id: int, user_id: int) -> PortfolioSnapshot:
    game = get_game_or_raise(db, game_id)
    participant = get_participant_or_raise(db, game.id, user_id)

    symbols = [holding.symbol for holding in participant.holdings]
    prices: dict[str, Decimal] = {}
    if symbols:
        rows = db.execute(select(Stock.symbol, Stock.price).where(Stock.symbol.in_(symbols))).all()
        prices = {str(symbol): Decimal(str(price)) for symbol, price in rows}

    positions: list[PositionValue] = []
    for holding in participant.holdings:
        if holding.quantity <= 0:
            continue
        price = prices.get(holding.symbol, Decimal("0"))
        positions.append(
            PositionValue(
                symbol=holding.symbol,
                quantity=int(holding.quantity),
                price=price,
                market_value=price * Decimal(int(holding.quantity)),
            )
        )

    cash = Decimal(str(participant.cash))
    holdings_value = sum((position.market_value for position in positions), Decimal("0"))
    return PortfolioSnapshot(
        participant=participant,
        cash=cash,
        holdings_value=holdings_value,
        equity=cash + holdings_value,
        positions=positions,
    )


def list_trades(db: Session, game_id: int, user_id: int, limit: int = 100) -> list[Trade]:
    game = get_game_or_raise(db, game_id)
    participant = get_participant_or_raise(db, game.id, user_id)
    return list(
        db.execute(
            select(Trade)
            .where(Trade.participant_id == participant.id)
            .order_by(Trade.created_at.desc(), Trade.id.desc())
            .limit(limit)
        ).scalars().all()
    )
