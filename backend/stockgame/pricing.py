import re
from decimal import Decimal

from sqlalchemy.orm import Session

from .errors import ValidationError
from .models import Stock

VALID_SYMBOL = re.compile(r"^[A-Z][A-Z0-9.\-]{0,15}$")


def normalize_symbol(raw_symbol: str | None) -> str:
    symbol = (raw_symbol or "").strip().upper()
    if not symbol:
        raise ValidationError("stockSymbol is required")
    if not VALID_SYMBOL.match(symbol):
        raise ValidationError(f"Invalid stock symbol '{symbol}'.")
    return symbol


def current_price(db: Session, symbol: str) -> Decimal:
    """Current unit price of a tradable symbol; unknown symbols are rejected."""
    stock = db.get(Stock, symbol)
    if stock is None:
        raise ValidationError(f"Unknown stock symbol '{symbol}'.")
    price = Decimal(str(stock.price))
    if price <= 0:
        raise ValidationError(f"Stock '{symbol}' has no tradable price.")
    return price


def cost_to_buy(price: Decimal, qty: int) -> Decimal:
    return price * Decimal(qty)


def proceeds_to_sell(price: Decimal, qty: int) -> Decimal:
    if qty <= 0:
        return Decimal("0")
    return price * Decimal(qty)


def upsert_stock_price(db: Session, symbol: str, price: Decimal, name: str | None = None) -> Stock:
    if price <= 0:
        raise ValidationError("price must be > 0")
    stock = db.get(Stock, symbol)
    if stock is None:
        if not name:
            raise ValidationError(f"name is required to list new stock '{symbol}'.")
        stock = Stock(symbol=symbol, name=name, price=float(price))
        db.add(stock)
        return stock

    stock.price = float(price)
    if name:
        stock.name = name
    return stock
