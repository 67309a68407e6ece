import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.orm.exc import StaleDataError

from stockgame import settlement
from stockgame.errors import (
    ConflictError,
    GameClosedError,
    InsufficientFundsError,
    InsufficientHoldingsError,
    NotFoundError,
    ValidationError,
)
from stockgame.models import Game, Holding, Participant, Trade, utcnow
from stockgame.pricing import upsert_stock_price

from conftest import make_user


def test_register_grants_initial_cash(db, game):
    user = make_user(db, "alice@example.com")

    participant = settlement.register(db, game.id, user.id)

    assert Decimal(str(participant.cash)) == Decimal("1000")
    assert settlement.holdings_map(participant) == {}


def test_second_registration_fails_without_mutation(db, game):
    user = make_user(db, "alice@example.com")
    settlement.register(db, game.id, user.id)
    settlement.buy(db, game.id, user.id, "AAPL", 1)

    with pytest.raises(ConflictError):
        settlement.register(db, game.id, user.id)

    count = db.execute(
        select(func.count()).select_from(Participant).where(Participant.game_id == game.id)
    ).scalar_one()
    assert count == 1
    participant = settlement.get_participant_or_raise(db, game.id, user.id)
    assert settlement.holdings_map(participant) == {"AAPL": 1}


def test_register_unknown_game(db):
    user = make_user(db, "alice@example.com")

    with pytest.raises(NotFoundError):
        settlement.register(db, 424242, user.id)


def test_buy_and_sell_round_trip_restores_ledger(db, game):
    user = make_user(db, "bob@example.com")
    settlement.register(db, game.id, user.id)

    bought = settlement.buy(db, game.id, user.id, "msft", 2)
    assert bought.symbol == "MSFT"
    assert bought.total == Decimal("830.4")
    assert Decimal(str(bought.participant.cash)) == Decimal("169.6")

    sold = settlement.sell(db, game.id, user.id, "MSFT", 2)
    assert Decimal(str(sold.participant.cash)) == Decimal("1000")
    assert settlement.holdings_map(sold.participant) == {}
    assert db.execute(select(func.count()).select_from(Holding)).scalar_one() == 0


def test_partial_sell_keeps_remaining_quantity(db, game):
    user = make_user(db, "bob@example.com")
    settlement.register(db, game.id, user.id)
    settlement.buy(db, game.id, user.id, "KO", 5)

    result = settlement.sell(db, game.id, user.id, "KO", 2)

    assert settlement.holdings_map(result.participant) == {"KO": 3}


def test_unaffordable_buy_leaves_state_unchanged(db, game):
    user = make_user(db, "carol@example.com")
    settlement.register(db, game.id, user.id)

    with pytest.raises(InsufficientFundsError):
        settlement.buy(db, game.id, user.id, "AAPL", 1000)

    participant = settlement.get_participant_or_raise(db, game.id, user.id)
    assert Decimal(str(participant.cash)) == Decimal("1000")
    assert settlement.holdings_map(participant) == {}
    assert db.execute(select(func.count()).select_from(Trade)).scalar_one() == 0


def test_buy_can_spend_exactly_all_cash(db, game):
    user = make_user(db, "carol@example.com")
    settlement.register(db, game.id, user.id)
    upsert_stock_price(db, "PFE", Decimal("250"))
    db.commit()

    result = settlement.buy(db, game.id, user.id, "PFE", 4)

    assert Decimal(str(result.participant.cash)) == Decimal("0")


def test_oversell_leaves_state_unchanged(db, game):
    user = make_user(db, "dave@example.com")
    settlement.register(db, game.id, user.id)
    settlement.buy(db, game.id, user.id, "AAPL", 1)

    with pytest.raises(InsufficientHoldingsError):
        settlement.sell(db, game.id, user.id, "AAPL", 2)
    with pytest.raises(InsufficientHoldingsError):
        settlement.sell(db, game.id, user.id, "MSFT", 1)

    participant = settlement.get_participant_or_raise(db, game.id, user.id)
    assert settlement.holdings_map(participant) == {"AAPL": 1}
    assert Decimal(str(participant.cash)) == Decimal("810.5")


@pytest.mark.parametrize("quantity", [0, -3, 1.5, True, "2"])
def test_quantity_must_be_positive_integer(db, game, quantity):
    user = make_user(db, "erin@example.com")
    settlement.register(db, game.id, user.id)

    with pytest.raises(ValidationError):
        settlement.buy(db, game.id, user.id, "AAPL", quantity)


def test_unknown_symbol_is_rejected(db, game):
    user = make_user(db, "erin@example.com")
    settlement.register(db, game.id, user.id)

    with pytest.raises(ValidationError):
        settlement.buy(db, game.id, user.id, "NOPE", 1)


def test_non_participant_cannot_trade(db, game):
    user = make_user(db, "frank@example.com")

    with pytest.raises(NotFoundError):
        settlement.buy(db, game.id, user.id, "AAPL", 1)


def test_closed_game_rejects_trades(db, game):
    user = make_user(db, "grace@example.com")
    settlement.register(db, game.id, user.id)
    settlement.buy(db, game.id, user.id, "AAPL", 1)
    after_end = game.end_time + timedelta(seconds=1)

    with pytest.raises(GameClosedError):
        settlement.buy(db, game.id, user.id, "AAPL", 1, now=after_end)
    with pytest.raises(GameClosedError):
        settlement.sell(db, game.id, user.id, "AAPL", 1, now=after_end)
    with pytest.raises(GameClosedError):
        settlement.register(db, game.id, make_user(db, "late@example.com").id, now=after_end)


def test_stale_participant_write_is_refused(app, db, game):
    user = make_user(db, "heidi@example.com")
    participant_id = settlement.register(db, game.id, user.id).id

    first = app.state.session_factory()
    second = app.state.session_factory()
    try:
        a = first.get(Participant, participant_id)
        b = second.get(Participant, participant_id)

        b.cash = 1.0
        second.commit()

        a.cash = 2.0
        with pytest.raises(StaleDataError):
            first.commit()
        first.rollback()
    finally:
        first.close()
        second.close()


def test_buy_rechecks_funds_after_losing_race(app, db, game):
    user = make_user(db, "ivan@example.com")
    settlement.register(db, game.id, user.id)
    fired = []

    def interloper(session, flush_context, instances):
        if fired:
            return
        fired.append(True)
        other = app.state.session_factory()
        try:
            settlement.buy(other, game.id, user.id, "AAPL", 3)
        finally:
            other.close()

    event.listen(db, "before_flush", interloper)
    try:
        with pytest.raises(InsufficientFundsError):
            settlement.buy(db, game.id, user.id, "AAPL", 3)
    finally:
        event.remove(db, "before_flush", interloper)

    participant = settlement.get_participant_or_raise(db, game.id, user.id)
    assert Decimal(str(participant.cash)) == Decimal("431.5")
    assert settlement.holdings_map(participant) == {"AAPL": 3}


def test_exhausted_retries_raise_conflict(app, db, game):
    user = make_user(db, "judy@example.com")
    settlement.register(db, game.id, user.id)

    def interloper(session, flush_context, instances):
        other = app.state.session_factory()
        try:
            settlement.buy(other, game.id, user.id, "INTC", 1)
        finally:
            other.close()

    event.listen(db, "before_flush", interloper)
    try:
        with pytest.raises(ConflictError):
            settlement.buy(db, game.id, user.id, "INTC", 1, max_attempts=2)
    finally:
        event.remove(db, "before_flush", interloper)


def run_in_threads(app, workers, task, expected):
    """Run task(session, index) in parallel threads, one session each, released together."""
    barrier = threading.Barrier(workers)
    outcomes: list[tuple[int, str]] = []
    unexpected: list[BaseException] = []
    lock = threading.Lock()

    def worker(index):
        session = app.state.session_factory()
        try:
            barrier.wait()
            task(session, index)
            outcome = "ok"
        except expected as exc:
            outcome = type(exc).__name__
        except BaseException as exc:
            with lock:
                unexpected.append(exc)
            return
        finally:
            session.close()
        with lock:
            outcomes.append((index, outcome))

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return outcomes, unexpected


def test_concurrent_buys_never_overdraw(app, db, game):
    upsert_stock_price(db, "KO", Decimal("100"))
    db.commit()
    user = make_user(db, "mallory@example.com")
    settlement.register(db, game.id, user.id)

    outcomes, unexpected = run_in_threads(
        app,
        16,
        lambda session, _: settlement.buy(session, game.id, user.id, "KO", 1, max_attempts=50),
        (InsufficientFundsError, ConflictError),
    )

    assert unexpected == []
    db.expire_all()
    participant = settlement.get_participant_or_raise(db, game.id, user.id)
    bought = [outcome for _, outcome in outcomes].count("ok")
    cash = Decimal(str(participant.cash))
    assert cash >= 0
    assert bought <= 10
    assert settlement.holdings_map(participant).get("KO", 0) == bought
    assert cash == Decimal("1000") - Decimal("100") * bought
    assert db.execute(select(func.count()).select_from(Trade)).scalar_one() == bought


def test_concurrent_buys_and_sells_conserve_value(app, db, game):
    upsert_stock_price(db, "KO", Decimal("100"))
    db.commit()
    user = make_user(db, "olivia@example.com")
    settlement.register(db, game.id, user.id)
    settlement.buy(db, game.id, user.id, "KO", 5)

    def trade(session, index):
        if index % 2 == 0:
            settlement.buy(session, game.id, user.id, "KO", 1, max_attempts=50)
        else:
            settlement.sell(session, game.id, user.id, "KO", 1, max_attempts=50)

    outcomes, unexpected = run_in_threads(
        app,
        20,
        trade,
        (InsufficientFundsError, InsufficientHoldingsError, ConflictError),
    )

    assert unexpected == []
    bought = sum(1 for index, outcome in outcomes if outcome == "ok" and index % 2 == 0)
    sold = sum(1 for index, outcome in outcomes if outcome == "ok" and index % 2 == 1)

    db.expire_all()
    participant = settlement.get_participant_or_raise(db, game.id, user.id)
    cash = Decimal(str(participant.cash))
    shares = settlement.holdings_map(participant).get("KO", 0)
    assert cash >= 0
    assert shares >= 0
    assert shares == 5 + bought - sold
    assert cash + Decimal("100") * shares == Decimal("1000")
    assert db.execute(select(func.count()).select_from(Trade)).scalar_one() == 1 + bought + sold
    quantities = db.execute(select(Holding.quantity)).scalars().all()
    assert all(quantity > 0 for quantity in quantities)


def test_register_loses_race_to_concurrent_registration(app, db, game):
    user = make_user(db, "peggy@example.com")
    fired = []

    def interloper(session, flush_context, instances):
        if fired:
            return
        fired.append(True)
        other = app.state.session_factory()
        try:
            settlement.register(other, game.id, user.id)
        finally:
            other.close()

    event.listen(db, "before_flush", interloper)
    try:
        with pytest.raises(ConflictError):
            settlement.register(db, game.id, user.id)
    finally:
        event.remove(db, "before_flush", interloper)

    count = db.execute(
        select(func.count()).select_from(Participant).where(Participant.user_id == user.id)
    ).scalar_one()
    assert count == 1
    participant = settlement.get_participant_or_raise(db, game.id, user.id)
    assert Decimal(str(participant.cash)) == Decimal("1000")


def test_concurrent_registrations_admit_one(app, db, game):
    user = make_user(db, "rupert@example.com")

    outcomes, unexpected = run_in_threads(
        app,
        8,
        lambda session, _: settlement.register(session, game.id, user.id),
        (ConflictError,),
    )

    assert unexpected == []
    results = sorted(outcome for _, outcome in outcomes)
    assert results == ["ConflictError"] * 7 + ["ok"]
    count = db.execute(
        select(func.count()).select_from(Participant).where(Participant.user_id == user.id)
    ).scalar_one()
    assert count == 1


def test_list_games_pages(db):

    start = datetime(2030, 1, 1)
    for index in range(3):
        settlement.create_game(db, f"Game {index}", start, start + timedelta(days=1), Decimal("500"))

    first_page, total = settlement.list_games(db, page=1, limit=2)
    last_page, _ = settlement.list_games(db, page=2, limit=2)
    empty_page, _ = settlement.list_games(db, page=3, limit=2)

    assert total == 3
    assert [game.name for game in first_page] == ["Game 2", "Game 1"]
    assert [game.name for game in last_page] == ["Game 0"]
    assert empty_page == []


def test_portfolio_snapshot_values_holdings(db, game):
    user = make_user(db, "niaj@example.com")
    settlement.register(db, game.id, user.id)
    settlement.buy(db, game.id, user.id, "KO", 2)
    upsert_stock_price(db, "KO", Decimal("70"))
    db.commit()

    snapshot = settlement.build_portfolio_snapshot(db, game.id, user.id)

    assert snapshot.holdings_value == Decimal("140")
    assert snapshot.equity == Decimal("1000") - Decimal("120.4") + Decimal("140")


def test_utcnow_is_naive_utc():
    value = utcnow()

    assert value.tzinfo is None
    assert abs(value - datetime.now(timezone.utc).replace(tzinfo=None)) < timedelta(seconds=5)


def test_game_closes_at_end_time():
    now = utcnow()
    game = Game(name="Window", start_time=now - timedelta(days=1), end_time=now, initial_amount=100)

    assert game.is_closed(now)
    assert not game.is_closed(now - timedelta(seconds=1))
    assert not Game(name="Open", start_time=now, end_time=now + timedelta(days=1), initial_amount=100).is_closed()
