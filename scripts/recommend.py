"""
コレクション・銘柄レポートの表示

Usage:
    python scripts/recommend.py ls                         # コレクション一覧
    python scripts/recommend.py show corporate --duration 3y
    python scripts/recommend.py bond RU000A0JX0J2          # bond_id / ISIN / SECID
    python scripts/recommend.py search "газпром"
"""
import sys
import argparse
import logging
from pathlib import Path

import pandas as pd

# プロジェクトルートをパスに追加
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import DATABASE_URL, DURATION_LABELS, COLLECTION_LIST_LIMIT, SEARCH_LIMIT, LOG_LEVEL
from data.service import BondRecommender
from data.storage import Store
from data.suggest import parse_duration
from errors import BondRecommenderError, NotFoundError

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

pd.set_option("display.width", 200)
pd.set_option("display.max_columns", 20)


def reports_to_dataframe(reports) -> pd.DataFrame:
    return pd.DataFrame([
        {
            "ISIN": r.isin,
            "銘柄": r.short_name,
            "発行体": r.issuer_name,
            "償還日": r.maturity_date,
            "残存日数": r.days_till_maturity,
            "価格": r.open_price,
            "取得価額": r.open_value,
            "損益": r.profit_loss,
            "利回り(%)": r.interest_rate,
        }
        for r in reports
    ])


def cmd_ls(service: BondRecommender, args) -> None:
    for c in service.list_collections():
        print(f"{c.id:<12} {c.name}")


def cmd_show(service: BondRecommender, args) -> None:
    collection = service.get_collection(args.collection)
    reports = service.list_collection_bonds(collection.id, args.duration, limit=args.limit)
    years = parse_duration(args.duration)
    print(f"{collection.name} ({DURATION_LABELS.get(years, args.duration)})")
    if not reports:
        print("該当する銘柄がありません")
        return
    print(reports_to_dataframe(reports).to_string(index=False))


def cmd_bond(service: BondRecommender, args) -> None:
    r = service.get_report(args.key)
    print(f"{r.short_name} ({r.isin} / {r.security_id})")
    print(f"  発行体:       {r.issuer_name}")
    print(f"  種類:         {r.bond_type}")
    print(f"  償還日:       {r.maturity_date} (残り {r.days_till_maturity} 日)")
    print(f"  価格:         {r.open_price:.2f}% / 額面 {r.open_face_value:,.2f} {r.currency}")
    print(f"  経過利息:     {r.open_accrued_interest:,.2f}")
    print(f"  取得価額:     {r.open_value:,.2f} (手数料 {r.open_fee:,.2f})")
    print(f"  クーポン:     {r.coupon_payments:,.2f}")
    print(f"  償還:         {r.amortization_payments:,.2f}")
    print(f"  満期償還:     {r.maturity_payments:,.2f}")
    print(f"  税:           {r.taxes:,.2f}")
    print(f"  損益:         {r.profit_loss:,.2f} ({r.relative_profit_loss:.2f}%)")
    print(f"  年率利回り:   {r.interest_rate:.2f}%")

    if r.cash_flow:
        print("\nキャッシュフロー:")
        cf = pd.DataFrame([
            {"日付": c.date, "種類": c.type.value, "金額": c.value_rub} for c in r.cash_flow
        ])
        print(cf.to_string(index=False))


def cmd_search(service: BondRecommender, args) -> None:
    result = service.search(args.text, skip=args.skip, limit=args.limit)
    print(f"{result.total_count} 件中 {args.skip + 1}〜{args.skip + len(result.items)} 件")
    for b in result.items:
        print(f"#{b.id:<6} {b.isin:<14} {b.security_id:<14} {b.short_name}")


def main():
    parser = argparse.ArgumentParser(description="債券レコメンド")
    parser.add_argument("--db", type=str, default=DATABASE_URL, help="データベースURL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("ls", help="コレクション一覧")

    p = sub.add_parser("show", help="コレクションの銘柄")
    p.add_argument("collection")
    p.add_argument("--duration", default="1y", help="期間 (1y〜5y)")
    p.add_argument("--limit", type=int, default=COLLECTION_LIST_LIMIT)

    p = sub.add_parser("bond", help="銘柄レポート")
    p.add_argument("key", help="bond_id / ISIN / SECID")

    p = sub.add_parser("search", help="銘柄検索")
    p.add_argument("text")
    p.add_argument("--skip", type=int, default=0)
    p.add_argument("--limit", type=int, default=SEARCH_LIMIT)

    args = parser.parse_args()

    service = BondRecommender(Store(args.db))
    commands = {
        "ls": cmd_ls,
        "show": cmd_show,
        "bond": cmd_bond,
        "search": cmd_search,
    }
    try:
        commands[args.command](service, args)
    except NotFoundError as e:
        logger.error(f"見つかりません: {e}")
        sys.exit(1)
    except BondRecommenderError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
