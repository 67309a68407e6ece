import argparse
import csv
import json
from pathlib import Path
from typing import Iterable
from urllib import error, parse, request


def normalize(value: str) -> str:
    return " ".join((value or "").strip().lower().split())


def put_price(api_base: str, symbol: str, payload: dict, token: str) -> dict:
    url = f"{api_base.rstrip('/')}/api/stocks/{parse.quote(symbol)}"
    req = request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        },
        method="PUT",
    )
    with request.urlopen(req) as response:
        return json.loads(response.read().decode("utf-8"))


def detect_column(row: dict, candidates: Iterable[str]) -> str:
    normalized_keys = {normalize(key): key for key in row.keys()}
    for candidate in candidates:
        key = normalized_keys.get(normalize(candidate))
        if key:
            return key
    return ""


def main() -> int:
    parser = argparse.ArgumentParser(description="Push stock prices from a CSV into /api/stocks")
    parser.add_argument("--file", required=True, help="CSV file path (symbol, price, optional name)")
    parser.add_argument("--api-base", default="http://localhost:8000", help="API base URL")
    parser.add_argument("--token", required=True, help="Admin bearer token")
    parser.add_argument("--dry-run", action="store_true", help="Validate and print without posting")
    args = parser.parse_args()

    file_path = Path(args.file)
    if not file_path.exists():
        print(f"[error] file not found: {file_path}")
        return 1

    with file_path.open("r", encoding="utf-8", newline="") as csv_file:
        rows = list(csv.DictReader(csv_file))

    if not rows:
        print("[error] CSV has no rows")
        return 1

    sample = rows[0]
    col_symbol = detect_column(sample, ["symbol", "ticker", "stock_symbol"])
    col_price = detect_column(sample, ["price", "close", "last"])
    col_name = detect_column(sample, ["name", "company", "company_name"])

    if not col_symbol or not col_price:
        print("[error] CSV must include symbol and price columns")
        return 1

    success = 0
    skipped = 0
    failed = 0

    for idx, row in enumerate(rows, start=2):
        symbol = str(row.get(col_symbol, "")).strip().upper()
        price_raw = str(row.get(col_price, "")).strip()
        name = str(row.get(col_name, "")).strip() if col_name else ""

        if not symbol or not price_raw:
            skipped += 1
            continue

        try:
            price = float(price_raw)
        except ValueError:
            print(f"[row {idx}] invalid price value: {price_raw}")
            failed += 1
            continue
        if price <= 0:
            print(f"[row {idx}] price must be > 0 for {symbol}")
            failed += 1
            continue

        payload: dict = {"price": price}
        if name:
            payload["name"] = name

        if args.dry_run:
            print(f"[dry-run] row {idx}: {symbol} -> {price}")
            success += 1
            continue

        try:
            put_price(args.api_base, symbol, payload, token=args.token)
            success += 1
        except (error.URLError, json.JSONDecodeError) as exc:
            print(f"[row {idx}] update failed for {symbol}: {exc}")
            failed += 1

    print(
        f"done | updated={success} skipped={skipped} failed={failed}"
        + (" (dry-run)" if args.dry_run else "")
    )

    return 0 if failed == 0 else 2


if __name__ == "__main__":
    raise SystemExit(main())
