"""
ISS データ取得バッチスクリプト

静的データ (銘柄・支払・オファー) と市場データを取得し、
レポート・コレクションを再構築する。cron から定期実行すること。
各ジョブは別プロセスになるため、ロックファイル (FETCH_LOCK_PATH) で直列化する。

    5 6 * * *    python scripts/fetch_data.py --static     (毎日 06:05 UTC)
    */15 * * * * python scripts/fetch_data.py --market     (15分ごと)

Usage:
    python scripts/fetch_data.py             # 静的データ → 市場データ
    python scripts/fetch_data.py --static
    python scripts/fetch_data.py --market
    python scripts/fetch_data.py --if-empty  # ストアが空の場合のみ取得
"""
import sys
import argparse
import logging
import signal
import threading
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

# プロジェクトルートをパスに追加
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import (
    DATABASE_URL, ISS_URL, LOG_LEVEL, STATIC_FETCH_SCHEDULE, MARKET_DATA_FETCH_SCHEDULE,
)
from data.iss_client import ISSClient
from data.service import BondRecommender
from data.storage import Store
from errors import BondRecommenderError, UPSTREAM_ERRORS

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="ISS データ取得",
        epilog=(
            f"cron: \"{STATIC_FETCH_SCHEDULE}\" --static, "
            f"\"{MARKET_DATA_FETCH_SCHEDULE}\" --market"
        ),
    )
    parser.add_argument("--static", action="store_true", help="静的データのみ取得")
    parser.add_argument("--market", action="store_true", help="市場データのみ取得")
    parser.add_argument("--if-empty", action="store_true", help="ストアが空の場合のみ取得")
    parser.add_argument("--db", type=str, default=DATABASE_URL, help="データベースURL")
    parser.add_argument("--iss-url", type=str, default=ISS_URL, help="ISS のURL")
    parser.add_argument("--verbose", action="store_true", help="ISS へのリクエストを出力")
    args = parser.parse_args()

    # SIGINT / SIGTERM で取得処理をキャンセル (トランザクションはロールバック)
    cancel = threading.Event()

    def on_signal(signum, frame):
        logger.warning(f"シグナル {signum} を受信しました。取得処理を中断します")
        cancel.set()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    service = BondRecommender(
        Store(args.db),
        client=ISSClient(args.iss_url, verbose=args.verbose),
    )

    run_static = args.static or not args.market
    run_market = args.market or not args.static

    try:
        if args.if_empty:
            service.ensure_data(cancel)
            return

        if run_static:
            result = service.fetch_static_data(cancel)
            logger.info(
                f"静的データ: 新規債券 {result.bonds.new_bonds}, "
                f"新規クーポン {result.payments.new_coupons}, "
                f"新規オファー {result.offers.new_offers}, レポート {result.reports} 件"
            )
        if run_market:
            result = service.fetch_market_data(cancel)
            if result is not None:
                logger.info(
                    f"市場データ: {result.market_data.updated} 件更新, レポート {result.reports} 件"
                )
    except UPSTREAM_ERRORS as e:
        logger.error(f"ISS からの取得に失敗しました (次回実行で再試行): {e}")
        sys.exit(1)
    except BondRecommenderError as e:
        logger.error(f"取得処理を中断しました: {e}")
        sys.exit(1)
    except SQLAlchemyError as e:
        logger.error(f"ストアへの書き込みに失敗しました (ロールバック済み): {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
