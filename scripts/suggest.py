"""
ポートフォリオ提案

Usage:
    python scripts/suggest.py --amount 100000 --duration 3y
    python scripts/suggest.py --amount 100000 --duration 3y --part corporate=3 --part ofz=1
"""
import sys
import argparse
import logging
from pathlib import Path

import pandas as pd

# プロジェクトルートをパスに追加
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import DATABASE_URL, LOG_LEVEL
from data.report import cash_flow_timeline
from data.service import BondRecommender
from data.storage import Store
from errors import BondRecommenderError, ValidationError
from models import SuggestPart, SuggestRequest

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

pd.set_option("display.width", 200)


def parse_part(text: str) -> SuggestPart:
    """"corporate=3" → SuggestPart("corporate", 3.0)"""
    name, sep, weight = text.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"COLLECTION=WEIGHT 形式で指定してください: {text}")
    try:
        return SuggestPart(collection_id=name.strip(), weight=float(weight))
    except ValueError:
        raise argparse.ArgumentTypeError(f"比率が数値ではありません: {text}") from None


def main():
    parser = argparse.ArgumentParser(description="ポートフォリオ提案")
    parser.add_argument("--amount", type=float, required=True, help="投資額 (RUB)")
    parser.add_argument("--duration", default="1y", help="最長期間 (1y〜5y)")
    parser.add_argument(
        "--part", type=parse_part, action="append", default=[],
        metavar="COLLECTION=WEIGHT", help="コレクションと比率 (複数指定可)",
    )
    parser.add_argument("--db", type=str, default=DATABASE_URL, help="データベースURL")
    args = parser.parse_args()

    service = BondRecommender(Store(args.db))
    request = SuggestRequest(amount=args.amount, max_duration=args.duration, parts=args.part)

    try:
        result = service.suggest(request)
    except ValidationError as e:
        logger.error(f"リクエストが不正です: {e}")
        sys.exit(2)
    except BondRecommenderError as e:
        logger.error(str(e))
        sys.exit(1)

    if not result.positions:
        print("条件に合う銘柄がありません")
        return

    print("=== 概要 ===")
    print(f"投資額:     {result.amount:,.2f} RUB")
    print(f"期間:       {result.duration_days} 日")
    print(f"損益:       {result.profit_loss:,.2f} RUB ({result.relative_profit_loss:.2f}%)")
    print(f"年率利回り: {result.interest_rate:.2f}%")

    print("\n=== ポジション ===")
    positions = pd.DataFrame([
        {
            "ISIN": p.report.isin,
            "銘柄": p.report.short_name,
            "数量": p.quantity,
            "取得価額": p.report.open_value,
            "比率(%)": round(p.weight * 100, 2),
            "償還日": p.report.maturity_date,
            "利回り(%)": p.report.interest_rate,
        }
        for p in result.positions
    ])
    print(positions.to_string(index=False))

    timeline = cash_flow_timeline(p.report.cash_flow for p in result.positions)
    if not timeline.empty:
        print("\n=== キャッシュフロー ===")
        print(timeline[["date", "coupon", "amortization", "maturity", "total"]].to_string(index=False))


if __name__ == "__main__":
    main()
