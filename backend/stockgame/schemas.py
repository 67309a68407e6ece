from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserCredentialsIn(CamelModel):
    email: str = Field(max_length=254)
    password: str = Field(max_length=128)


class AuthTokenOut(CamelModel):
    token: str
    message: str


class UserOut(CamelModel):
    id: int
    email: str
    is_admin: bool = False


class ProfileOut(CamelModel):
    user: UserOut


class GameCreateIn(CamelModel):
    name: str = Field(min_length=1, max_length=160)
    start_time: datetime
    end_time: datetime
    initial_amount: float = Field(gt=0)


class RosterEntryOut(CamelModel):
    user_id: int
    email: str
    joined_at: datetime


class GameSummaryOut(CamelModel):
    id: int
    name: str
    start_time: datetime
    end_time: datetime
    initial_amount: float
    status: str
    participant_count: int
    created_at: datetime


class GameOut(GameSummaryOut):
    participants: list[RosterEntryOut]


class GameListOut(CamelModel):
    games: list[GameSummaryOut]
    page: int
    limit: int
    total: int


class ParticipantOut(CamelModel):
    id: int
    game_id: int
    user_id: int
    cash: float
    holdings: dict[str, int]
    joined_at: datetime


class TradeIn(CamelModel):
    stock_symbol: str = Field(min_length=1, max_length=16)
    quantity: int = Field(gt=0)


class TradeOut(CamelModel):
    message: str
    side: str
    stock_symbol: str
    quantity: int
    unit_price: float
    total: float
    cash: float
    holdings: dict[str, int]


class TradeRecordOut(CamelModel):
    id: int
    side: str
    stock_symbol: str
    quantity: int
    unit_price: float
    amount: float
    created_at: datetime


class PortfolioHoldingOut(CamelModel):
    stock_symbol: str
    quantity: int
    price: float
    market_value: float


class PortfolioOut(CamelModel):
    game_id: int
    cash: float
    holdings_value: float
    equity: float
    holdings: list[PortfolioHoldingOut]


class StockOut(CamelModel):
    symbol: str
    name: str
    price: float
    updated_at: datetime


class StockPriceIn(CamelModel):
    price: float = Field(gt=0)
    name: str | None = Field(default=None, min_length=1, max_length=128)
