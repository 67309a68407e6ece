import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import create_access_token, decode_access_token, hash_password, verify_password
from .config import Settings, get_settings
from .db import build_engine, build_session_factory, get_db
from .errors import (
    ApiError,
    AuthError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    map_error_to_response,
)
from .logging_config import configure_logging
from .models import Game, Participant, Stock, Trade, User
from .pricing import normalize_symbol, upsert_stock_price
from .schemas import (
    AuthTokenOut,
    GameCreateIn,
    GameListOut,
    GameOut,
    GameSummaryOut,
    ParticipantOut,
    PortfolioHoldingOut,
    PortfolioOut,
    ProfileOut,
    RosterEntryOut,
    StockOut,
    StockPriceIn,
    TradeIn,
    TradeOut,
    TradeRecordOut,
    UserCredentialsIn,
    UserOut,
)
from .seed import init_db, seed
from . import settlement

logger = logging.getLogger(__name__)

VALID_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6

TRADE_MESSAGES = {
    settlement.BUY: "Stocks purchased successfully",
    settlement.SELL: "Stocks sold successfully",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db(app.state.engine)
    db = app.state.session_factory()
    try:
        seed(db, app.state.settings)
    finally:
        db.close()
    yield
    app.state.engine.dispose()


app = FastAPI(title="Stock Game", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def configure_app(settings: Settings) -> FastAPI:
    """Bind settings, engine and session factory to the app; startup creates tables and seeds."""
    configure_logging(settings)
    engine = build_engine(settings.database_url)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    return app


@dataclass
class AuthContext:
    user: User
    claims: dict


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def normalize_email(raw_email: str | None) -> str:
    email = (raw_email or "").strip().lower()
    if not email or not VALID_EMAIL.match(email):
        raise ValidationError("Please enter a valid email address")
    return email


def validate_password(password: str | None) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    return password


def get_bearer_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> str:
    if not authorization:
        raise AuthError("Authentication required.")
    scheme, _, token = authorization.partition(" ")
    if scheme.strip().lower() != "bearer" or not token.strip():
        raise AuthError("Invalid authorization header.")
    return token.strip()


def get_auth_context(
    bearer_token: str = Depends(get_bearer_token),
    settings: Settings = Depends(get_app_settings),
    db: Session = Depends(get_db),
) -> AuthContext:
    claims = decode_access_token(bearer_token, settings)
    try:
        user_id = int(claims["sub"])
    except (TypeError, ValueError) as exc:
        raise AuthError("Invalid token.") from exc
    user = db.get(User, user_id)
    if user is None:
        raise AuthError("User not found.")
    return AuthContext(user=user, claims=claims)


def get_admin_context(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not auth.user.is_admin:
        raise ForbiddenError()
    return auth


def user_to_out(user: User) -> UserOut:
    return UserOut(id=int(user.id), email=str(user.email), is_admin=bool(user.is_admin))


def game_status(game: Game) -> str:
    return "closed" if game.is_closed() else "open"


def game_summary_to_out(game: Game) -> GameSummaryOut:
    return GameSummaryOut(
        id=int(game.id),
        name=str(game.name),
        start_time=game.start_time,
        end_time=game.end_time,
        initial_amount=float(game.initial_amount),
        status=game_status(game),
        participant_count=len(game.participants),
        created_at=game.created_at,
    )


def game_to_out(game: Game) -> GameOut:
    summary = game_summary_to_out(game)
    return GameOut(
        **summary.model_dump(),
        participants=[
            RosterEntryOut(
                user_id=int(participant.user_id),
                email=str(participant.user.email),
                joined_at=participant.joined_at,
            )
            for participant in game.participants
        ],
    )


def participant_to_out(participant: Participant) -> ParticipantOut:
    return ParticipantOut(
        id=int(participant.id),
        game_id=int(participant.game_id),
        user_id=int(participant.user_id),
        cash=float(participant.cash),
        holdings=settlement.holdings_map(participant),
        joined_at=participant.joined_at,
    )


def trade_result_to_out(result: settlement.TradeResult) -> TradeOut:
    return TradeOut(
        message=TRADE_MESSAGES[result.side],
        side=result.side,
        stock_symbol=result.symbol,
        quantity=result.quantity,
        unit_price=float(result.unit_price),
        total=float(result.total),
        cash=float(result.participant.cash),
        holdings=settlement.holdings_map(result.participant),
    )


def trade_to_out(trade: Trade) -> TradeRecordOut:
    return TradeRecordOut(
        id=int(trade.id),
        side=str(trade.side),
        stock_symbol=str(trade.symbol),
        quantity=int(trade.quantity),
        unit_price=float(trade.unit_price),
        amount=float(trade.amount),
        created_at=trade.created_at,
    )


def stock_to_out(stock: Stock) -> StockOut:
    return StockOut(
        symbol=str(stock.symbol),
        name=str(stock.name),
        price=float(stock.price),
        updated_at=stock.updated_at,
    )


@app.get("/")
def root():
    return {"ok": True, "service": "Stock Game API", "docs": "/docs", "health": "/healthz"}


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.post("/api/users/register", response_model=AuthTokenOut, status_code=201)
def register_user(
    payload: UserCredentialsIn,
    settings: Settings = Depends(get_app_settings),
    db: Session = Depends(get_db),
):
    email = normalize_email(payload.email)
    password = validate_password(payload.password)
    existing = db.execute(select(User.id).where(User.email == email)).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("User already exists")

    user = User(
        email=email,
        password_hash=hash_password(
            password,
            iterations=settings.password_pbkdf2_iterations,
            salt_bytes=settings.password_salt_bytes,
        ),
        is_admin=False,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("User already exists") from exc

    logger.info("User %s signed up", user.id)
    return AuthTokenOut(
        token=create_access_token(user, settings),
        message="User signed up successfully",
    )


@app.post("/api/users/login", response_model=AuthTokenOut)
def login_user(
    payload: UserCredentialsIn,
    settings: Settings = Depends(get_app_settings),
    db: Session = Depends(get_db),
):
    email = normalize_email(payload.email)
    password = validate_password(payload.password)
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if user is None:
        raise ValidationError("User not found")
    if not verify_password(password, user.password_hash):
        raise ValidationError("Invalid password")

    return AuthTokenOut(
        token=create_access_token(user, settings),
        message="User logged in successfully",
    )


@app.get("/api/users/profile", response_model=ProfileOut)
def user_profile(auth: AuthContext = Depends(get_auth_context)):
    return ProfileOut(user=user_to_out(auth.user))


@app.post("/api/games/create", response_model=GameOut, status_code=201)
def create_game(
    payload: GameCreateIn,
    auth: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    game = settlement.create_game(
        db=db,
        name=payload.name,
        start_time=payload.start_time,
        end_time=payload.end_time,
        initial_amount=Decimal(str(payload.initial_amount)),
        created_by=auth.user.id,
    )
    return game_to_out(game)


@app.get("/api/games", response_model=GameListOut)
def list_games(
    page: int = Query(default=1),
    limit: int = Query(default=10),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    games, total = settlement.list_games(db, page=page, limit=limit)
    return GameListOut(
        games=[game_summary_to_out(game) for game in games],
        page=page,
        limit=limit,
        total=total,
    )


@app.get("/api/games/{game_id}", response_model=GameOut)
def get_game(
    game_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    return game_to_out(settlement.get_game_or_raise(db, game_id))


@app.post("/api/games/{game_id}/register", response_model=ParticipantOut)
def register_for_game(
    game_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    participant = settlement.register(db, game_id=game_id, user_id=auth.user.id)
    return participant_to_out(participant)


@app.post("/api/games/{game_id}/buy", response_model=TradeOut)
def buy_stock(
    game_id: int,
    trade: TradeIn,
    auth: AuthContext = Depends(get_auth_context),
    settings: Settings = Depends(get_app_settings),
    db: Session = Depends(get_db),
):
    result = settlement.buy(
        db,
        game_id=game_id,
        user_id=auth.user.id,
        symbol=trade.stock_symbol,
        quantity=trade.quantity,
        max_attempts=settings.settlement_max_attempts,
    )
    return trade_result_to_out(result)


@app.post("/api/games/{game_id}/sell", response_model=TradeOut)
def sell_stock(
    game_id: int,
    trade: TradeIn,
    auth: AuthContext = Depends(get_auth_context),
    settings: Settings = Depends(get_app_settings),
    db: Session = Depends(get_db),
):
    result = settlement.sell(
        db,
        game_id=game_id,
        user_id=auth.user.id,
        symbol=trade.stock_symbol,
        quantity=trade.quantity,
        max_attempts=settings.settlement_max_attempts,
    )
    return trade_result_to_out(result)


@app.get("/api/games/{game_id}/portfolio", response_model=PortfolioOut)
def game_portfolio(
    game_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    snapshot = settlement.build_portfolio_snapshot(db, game_id=game_id, user_id=auth.user.id)
    return PortfolioOut(
        game_id=game_id,
        cash=float(snapshot.cash),
        holdings_value=float(snapshot.holdings_value),
        equity=float(snapshot.equity),
        holdings=[
            PortfolioHoldingOut(
                stock_symbol=position.symbol,
                quantity=position.quantity,
                price=float(position.price),
                market_value=float(position.market_value),
            )
            for position in snapshot.positions
        ],
    )


@app.get("/api/games/{game_id}/trades", response_model=list[TradeRecordOut])
def game_trades(
    game_id: int,
    limit: int = Query(default=100, ge=1, le=500),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    trades = settlement.list_trades(db, game_id=game_id, user_id=auth.user.id, limit=limit)
    return [trade_to_out(trade) for trade in trades]


@app.get("/api/stocks", response_model=list[StockOut])
def list_stocks(db: Session = Depends(get_db)):
    stocks = db.execute(select(Stock).order_by(Stock.symbol.asc())).scalars().all()
    return [stock_to_out(stock) for stock in stocks]


@app.put("/api/stocks/{symbol}", response_model=StockOut)
def update_stock_price(
    symbol: str,
    payload: StockPriceIn,
    auth: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    stock = upsert_stock_price(
        db,
        symbol=normalize_symbol(symbol),
        price=Decimal(str(payload.price)),
        name=payload.name,
    )
    db.commit()
    logger.info("Price of %s set to %s by user %s", stock.symbol, stock.price, auth.user.id)
    return stock_to_out(stock)


def format_request_validation_error(exc: RequestValidationError) -> str:
    messages = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(loc)
        message = str(error.get("msg", "Invalid value"))
        messages.append(f"{field}: {message}" if field else message)
    return "; ".join(messages) or "Invalid request"


def error_response(request: Request, error: BaseException) -> JSONResponse:
    settings: Settings = request.app.state.settings
    status_code, body = map_error_to_response(error, settings.expose_error_detail)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError):
    return error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    return error_response(request, ValidationError(format_request_validation_error(exc)))


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        original_url = request.url.path
        if request.url.query:
            original_url = f"{original_url}?{request.url.query}"
        return error_response(request, NotFoundError(f"Not Found - {original_url}"))
    return error_response(request, ApiError(str(exc.detail), status_code=exc.status_code))


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(request, exc)


configure_app(get_settings())
