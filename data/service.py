"""
アプリケーションサービス

取得処理 (静的データ / 市場データ) の実行と、UI・CLI 向けの参照 API をまとめる。

取得処理はロックファイル (FETCH_LOCK_PATH) で直列化する。cron の各ジョブや UI は
別プロセスで動くため、プロセス内のロックではなくファイルロックを使う:
    静的データ … ロックが空くまで待つ (後続の参照が意味を持つには完了が必要)
    市場データ … 最大 MARKET_DATA_LOCK_TIMEOUT 秒だけ待ち、取れなければ何もせず正常終了
                 (別の取得処理が鮮度を保っているとみなす)

1回の取得処理は1トランザクション。派生データの再構築まで成功した場合のみコミットする。
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Optional, Union

from filelock import FileLock, Timeout

from config import (
    FETCH_LOCK_PATH, MARKET_DATA_LOCK_TIMEOUT, COLLECTION_LIST_LIMIT, DURATIONS, SEARCH_LIMIT,
)
from data.classifier import Collection, CollectionRegistry, default_registry, rebuild_collections
from data.iss_client import ISSClient
from data.report import build_cash_flows, compute_reports
from data.storage import Store
from data.suggest import SuggestEngine, parse_duration
from data.sync import (
    BondIdMemo, SecuritiesWorker, PaymentsWorker, OffersWorker, MarketDataWorker,
    BondFetchStats, PaymentFetchStats, OfferFetchStats, MarketDataFetchStats,
)
from errors import NotFoundError
from models import Report, SearchResult, SuggestRequest, SuggestResult

logger = logging.getLogger(__name__)


@dataclass
class StaticFetchResult:
    bonds: BondFetchStats = field(default_factory=BondFetchStats)
    payments: PaymentFetchStats = field(default_factory=PaymentFetchStats)
    offers: OfferFetchStats = field(default_factory=OfferFetchStats)
    reports: int = 0
    elapsed: float = 0.0


@dataclass
class MarketFetchResult:
    market_data: MarketDataFetchStats = field(default_factory=MarketDataFetchStats)
    reports: int = 0
    elapsed: float = 0.0


class BondRecommender:

    def __init__(
        self,
        store: Store,
        client: Optional[ISSClient] = None,
        registry: Optional[CollectionRegistry] = None,
        lock_path: Union[str, Path] = FETCH_LOCK_PATH,
    ):
        self.store = store
        self.client = client or ISSClient()
        self.registry = registry or default_registry()
        self.suggest_engine = SuggestEngine(self.registry)
        self.lock_path = Path(lock_path)
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        # thread_local: スレッドごとに別の fd で flock するので、同一プロセス内のスレッド間でも排他になる
        self._fetch_lock = FileLock(str(self.lock_path), thread_local=True)

    # ============================================================
    # 取得処理
    # ============================================================
    def fetch_static_data(
        self,
        cancel: Optional[threading.Event] = None,
        today: Optional[date] = None,
    ) -> StaticFetchResult:
        """証券・支払・オファーを取得し、派生データを再構築する"""
        today = today or date.today()
        with self._fetch_lock:
            logger.info("=== 静的データ取得 ===")
            started = time.monotonic()
            result = StaticFetchResult()

            with self.store.begin() as tx:
                result.bonds = SecuritiesWorker(self.client, tx).run(cancel)

                # メモは1回の取得処理の間だけ共有する
                memo = BondIdMemo()
                result.payments = PaymentsWorker(self.client, tx, memo).run(cancel, today)
                result.offers = OffersWorker(self.client, tx, memo).run(cancel)

                result.reports = self.rebuild(tx, today)

            result.elapsed = time.monotonic() - started
            logger.info(f"=== 静的データ取得 完了 ({result.elapsed:.1f}秒) ===")
            return result

    def fetch_market_data(
        self,
        cancel: Optional[threading.Event] = None,
        today: Optional[date] = None,
    ) -> Optional[MarketFetchResult]:
        """
        市場データを取得し、派生データを再構築する。

        Returns:
            MarketFetchResult (ロックが取れず実行しなかった場合は None)
        """
        try:
            self._fetch_lock.acquire(timeout=MARKET_DATA_LOCK_TIMEOUT)
        except Timeout:
            logger.info("市場データ取得: 別の取得処理が実行中のためスキップ")
            return None

        try:
            today = today or date.today()
            logger.info("=== 市場データ取得 ===")
            started = time.monotonic()
            result = MarketFetchResult()

            with self.store.begin() as tx:
                result.market_data = MarketDataWorker(self.client, tx, BondIdMemo()).run(cancel)
                result.reports = self.rebuild(tx, today)

            result.elapsed = time.monotonic() - started
            logger.info(f"=== 市場データ取得 完了 ({result.elapsed:.1f}秒) ===")
            return result
        finally:
            self._fetch_lock.release()

    def rebuild(self, tx, today: date) -> int:
        """キャッシュフロー → レポート → コレクション の順に派生データを作り直す"""
        bonds = tx.bonds.frame()

        cash_flows = build_cash_flows(tx.payments.frame(), bonds, today)
        tx.cash_flows.rebuild(cash_flows)

        reports = compute_reports(
            bonds,
            tx.issuers.frame(),
            tx.market_data.frame(),
            cash_flows,
            today,
        )
        count = tx.reports.rebuild(reports)

        rebuild_collections(tx, self.registry, today)
        return count

    def is_static_data_up_to_date(self) -> bool:
        """債券が1件でもあれば取得済みとみなす"""
        with self.store.begin() as tx:
            return tx.bonds.count() > 0

    def data_summary(self) -> dict[str, int]:
        """ストアの件数 (サイドバー表示用)"""
        with self.store.begin() as tx:
            return {
                "bonds": tx.bonds.count(),
                "payments": tx.payments.count(),
                "offers": tx.offers.count(),
                "market_data": tx.market_data.count(),
            }

    def ensure_data(self, cancel: Optional[threading.Event] = None) -> None:
        """起動時: ストアが空なら静的データ → 市場データの順に取得する"""
        if self.is_static_data_up_to_date():
            return
        logger.info("ストアが空のため初回取得を実行します")
        self.fetch_static_data(cancel)
        self.fetch_market_data(cancel)

    # ============================================================
    # 参照 API
    # ============================================================
    def list_collections(self) -> list[Collection]:
        return self.registry.list()

    def get_collection(self, collection_id: str) -> Collection:
        return self.registry.get(collection_id)

    def list_collection_bonds(
        self,
        collection_id: str,
        duration: Union[int, str],
        limit: int = COLLECTION_LIST_LIMIT,
    ) -> list[Report]:
        """コレクションの収録銘柄 (利回り順)"""
        collection = self.registry.get(collection_id)
        years = parse_duration(duration)
        with self.store.begin() as tx:
            ids = tx.collection_bonds.list(collection.id, years, limit)
            return tx.reports.list(ids)

    def collection_overview(self, limit: int = COLLECTION_LIST_LIMIT) -> dict[str, dict[int, list[Report]]]:
        """全コレクション × 全期間の収録銘柄"""
        overview: dict[str, dict[int, list[Report]]] = {}
        with self.store.begin() as tx:
            for collection in self.registry.list():
                overview[collection.id] = {
                    d: tx.reports.list(tx.collection_bonds.list(collection.id, d, limit))
                    for d in DURATIONS
                }
        return overview

    def get_report(self, key: Union[int, str]) -> Report:
        """
        銘柄のレポート (キャッシュフロー付き)。

        Args:
            key: bond_id (数値) / ISIN / SECID
        """
        with self.store.begin() as tx:
            bond_id = self._resolve_bond_id(tx, key)
            report = tx.reports.get(bond_id)
            report.cash_flow = tx.cash_flows.list(bond_id)
            return report

    @staticmethod
    def _resolve_bond_id(tx, key: Union[int, str]) -> int:
        if isinstance(key, int):
            return tx.bonds.get_by_id(key).id

        text = str(key).strip()
        if text.isdigit():
            try:
                return tx.bonds.get_by_id(int(text)).id
            except NotFoundError:
                pass
        try:
            return tx.bonds.get_by_isin(text).id
        except NotFoundError:
            return tx.bonds.get_by_security_id(text).id

    def suggest(self, request: SuggestRequest, today: Optional[date] = None) -> SuggestResult:
        with self.store.begin() as tx:
            return self.suggest_engine.suggest(tx, request, today)

    def search(self, text: str, skip: int = 0, limit: int = SEARCH_LIMIT) -> SearchResult:
        with self.store.begin() as tx:
            return tx.search.search(text, skip=skip, limit=limit)
