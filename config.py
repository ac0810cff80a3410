"""
MOEX債券レコメンドシステム - 設定・定数
"""
import os
from pathlib import Path

# ============================================================
# パス設定
# ============================================================
PROJECT_ROOT = Path(__file__).parent
STORE_DIR = PROJECT_ROOT / "store"

# ストアファイル (SQLite)
DATABASE_PATH = STORE_DIR / "bonds.db"

# 環境変数で上書き可能 (本番は PostgreSQL を想定)
DATABASE_URL = os.environ.get("DATABASE_URL", f"sqlite:///{DATABASE_PATH}")

# 取得処理のロックファイル (cron・UI など別プロセス間で共有する)
FETCH_LOCK_PATH = Path(os.environ.get("FETCH_LOCK_PATH", STORE_DIR / "fetch.lock"))

# ============================================================
# MOEX ISS API
# ============================================================
ISS_URL = os.environ.get("ISS_URL", "https://iss.moex.com").rstrip("/")

# 全リクエストに付与するパラメータ (extended JSON, メタ情報なし)
ISS_COMMON_PARAMS = {
    "iss.json": "extended",
    "iss.meta": "off",
}

ISS_SECURITIES_PATH = "/iss/securities.json"
ISS_SECURITY_DESC_PATH = "/iss/securities/{security_id}.json"
ISS_BONDIZATION_PATH = "/iss/statistics/engines/stock/markets/bonds/bondization.json"
ISS_MARKETDATA_PATH = "/iss/engines/stock/markets/bonds/securities.json"

REQUEST_TIMEOUT = 30  # 秒
PAGE_LIMIT = 100      # 1ページあたりの件数 (ISSの既定値)

# GETリクエストを INFO で出力するか
ISS_VERBOSE = os.environ.get("ISS_VERBOSE", "") not in ("", "0", "false")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# ============================================================
# 通貨
# ============================================================
BASE_CURRENCY = "RUB"

# ISS の旧コード → 正規化後
CURRENCY_ALIASES = {
    "SUR": "RUB",
    "RUR": "RUB",
}

# ============================================================
# レポート計算
# ============================================================
FEE_RATE = 0.0005        # 取引手数料 0.05%
TAX_RATE = 0.13          # 所得税 13%
DAYS_PER_YEAR = 356.25   # 年率換算の除数 (既存レポートとの互換のため 365.25 ではない)

# ============================================================
# コレクション / ポートフォリオ提案
# ============================================================
OUTLIER_SIGMA = 3                # 外れ値除外: 平均 + 3σ
COLLECTION_RATE_WINDOW = 1.0     # コレクション内の候補: 最高利回りから 1 ポイント以内
COLLECTION_MIN_DAYS = 3          # コレクション収録に必要な償還までの最短日数
SUGGEST_CANDIDATE_LIMIT = 10     # 1パートあたりの候補銘柄数
COLLECTION_LIST_LIMIT = 25       # コレクション一覧の表示件数
SEARCH_LIMIT = 10

# 期間バケット (年)
DURATIONS = [1, 2, 3, 4, 5]

DURATION_LABELS: dict[int, str] = {
    1: "1年以内",
    2: "2年以内",
    3: "3年以内",
    4: "4年以内",
    5: "5年以内",
}

# ============================================================
# 取得ジョブ
# ============================================================
# 静的データ (銘柄・支払・オファー): 毎日 06:05 UTC
# 市場データ: 15分ごと
# cron 例:
#   5 6 * * *    python scripts/fetch_data.py --static
#   */15 * * * * python scripts/fetch_data.py --market
STATIC_FETCH_SCHEDULE = "5 6 * * *"
MARKET_DATA_FETCH_SCHEDULE = "*/15 * * * *"

MARKET_DATA_LOCK_TIMEOUT = 1.0  # 秒
