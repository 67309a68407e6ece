import os
import sys
from pathlib import Path


def main() -> int:
    # Ensure `import stockgame.*` works when running from repo root in CI.
    backend_dir = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(backend_dir))

    database_url = os.environ.get("STOCKGAME_DATABASE_URL", "").strip()
    if not database_url:
        raise RuntimeError("STOCKGAME_DATABASE_URL is required for CI smoke test")

    from sqlalchemy import func, select

    from stockgame.config import get_settings
    from stockgame.db import build_engine, build_session_factory
    from stockgame.models import Stock, User
    from stockgame.seed import STOCK_CATALOG, init_db, seed

    settings = get_settings()

    safe_url = database_url
    if "://" in safe_url and "@" in safe_url:
        scheme, rest = safe_url.split("://", 1)
        creds, host = rest.split("@", 1)
        if ":" in creds:
            user, _pw = creds.split(":", 1)
            safe_url = f"{scheme}://{user}:***@{host}"
    print("CI smoke database:", safe_url)

    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)

    # 1) Create tables (fresh DB should be empty).
    init_db(engine)

    # 2) Seed is idempotent. Run twice to verify "from scratch" and "restart" behavior.
    db = session_factory()
    try:
        seed(db, settings)
        seed(db, settings)

        admin_count = int(
            db.execute(select(func.count()).select_from(User).where(User.is_admin.is_(True))).scalar_one()
        )
        stock_count = int(db.execute(select(func.count()).select_from(Stock)).scalar_one())
    finally:
        db.close()
        engine.dispose()

    if admin_count != 1:
        raise RuntimeError(f"Expected exactly 1 seeded admin, found {admin_count}")
    if settings.seed_stocks and stock_count < len(STOCK_CATALOG):
        raise RuntimeError(f"Expected at least {len(STOCK_CATALOG)} stocks, found {stock_count}")

    print("OK create_all + seed", {"admins": admin_count, "stocks": stock_count})
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
