"""
MOEX ISS クライアント

ISS (https://iss.moex.com) から債券の一覧・支払・オファー・市場データを取得する。
ページングされるエンドポイントはカーソル (PageCursor) として返す。

エラー方針:
    接続エラー・HTTPエラー・JSONデコードエラーは requests の例外のまま呼び出し元へ伝播する。
    レスポンス形式の不正は UpstreamError。リトライはしない (次回のスケジュール実行に任せる)。
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Generic, Optional, TypeVar
from urllib.parse import quote

import requests

from config import (
    ISS_URL, ISS_COMMON_PARAMS, ISS_SECURITIES_PATH, ISS_SECURITY_DESC_PATH,
    ISS_BONDIZATION_PATH, ISS_MARKETDATA_PATH, REQUEST_TIMEOUT, PAGE_LIMIT,
    ISS_VERBOSE,
)
from data.parser_iss import (
    iter_section, parse_security, parse_coupon, parse_amortization,
    parse_offer, parse_market_data, parse_description, DATE_FORMAT,
)
from models import (
    IssSecurity, IssCoupon, IssAmortization, IssOffer, IssMarketData,
    SecurityDescription,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

HEADERS = {
    "Accept": "application/json",
}


class PageCursor(Generic[T]):
    """
    ISS のページングカーソル。

    next() のたびに1回 GET し、次のページのレコードリストを返す。
    0件のページが返ったら StopIteration で終了する。
    start は実際に返った件数だけ進める (最終ページが短くても次の呼び出しで正しく終わる)。
    """

    def __init__(
        self,
        client: ISSClient,
        path: str,
        section: str,
        parse: Callable[[dict], T],
        params: Optional[dict] = None,
        start: int = 0,
        limit: int = PAGE_LIMIT,
    ):
        self.client = client
        self.path = path
        self.section = section
        self.parse = parse
        self.params = dict(params or {})
        self.start = start
        self.limit = limit if limit > 0 else PAGE_LIMIT

    def __iter__(self):
        return self

    def __next__(self) -> list[T]:
        params = dict(self.params)
        params["limit"] = self.limit
        if self.start > 0:
            params["start"] = self.start

        payload = self.client.get_json(self.path, params)
        items = [self.parse(row) for row in iter_section(payload, self.section)]
        if not items:
            raise StopIteration

        self.start += len(items)
        return items


class ISSClient:
    """MOEX ISS の HTTP+JSON クライアント"""

    def __init__(
        self,
        base_url: str = ISS_URL,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT,
        verbose: bool = ISS_VERBOSE,
    ):
        if not base_url.startswith(("http://", "https://")):
            raise ValueError(f"\"{base_url}\" は有効なURLではありません (http(s)のみ対応)")

        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update(HEADERS)
        self.timeout = timeout
        self.verbose = verbose

    def get_json(self, path: str, params: Optional[dict] = None) -> Any:
        """
        GET して JSON を返す。

        Args:
            path: "/iss/..." 形式のパス
            params: クエリパラメータ (iss.json / iss.meta は自動付与)
        """
        url = self.base_url + path
        query = dict(params or {})
        query.update(ISS_COMMON_PARAMS)

        try:
            resp = self.session.get(url, params=query, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"GET {url}: {e}")
            raise

        if self.verbose:
            logger.info(f"GET {url} -> {resp.status_code}")
        else:
            logger.debug(f"GET {url} -> {resp.status_code}")

        try:
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            logger.error(f"GET {url}: {e}")
            raise

    # ============================================================
    # 証券一覧
    # ============================================================
    def list_securities(
        self,
        engine: str = "stock",
        market: str = "bonds",
        is_trading: Optional[bool] = True,
        start: int = 0,
        limit: int = PAGE_LIMIT,
    ) -> PageCursor[IssSecurity]:
        params: dict[str, Any] = {}
        if engine:
            params["engine"] = engine
        if market:
            params["market"] = market
        if is_trading is not None:
            params["is_trading"] = "true" if is_trading else "false"

        return PageCursor(
            self, ISS_SECURITIES_PATH, "securities", parse_security,
            params=params, start=start, limit=limit,
        )

    # ============================================================
    # 支払 (bondization)
    # ============================================================
    def _bondization(
        self,
        section: str,
        parse: Callable[[dict], T],
        since: Optional[date],
        till: Optional[date],
        is_traded: Optional[bool],
        start: int,
        limit: int,
    ) -> PageCursor[T]:
        params: dict[str, Any] = {
            "iss.only": section,
            "sort_order": "asc",
        }
        if since is not None:
            params["from"] = since.strftime(DATE_FORMAT)
        if till is not None:
            params["till"] = till.strftime(DATE_FORMAT)
        if is_traded is not None:
            params["is_traded"] = "true" if is_traded else "false"

        return PageCursor(
            self, ISS_BONDIZATION_PATH, section, parse,
            params=params, start=start, limit=limit,
        )

    def list_coupons(
        self,
        since: Optional[date] = None,
        till: Optional[date] = None,
        is_traded: Optional[bool] = None,
        start: int = 0,
        limit: int = PAGE_LIMIT,
    ) -> PageCursor[IssCoupon]:
        return self._bondization("coupons", parse_coupon, since, till, is_traded, start, limit)

    def list_amortizations(
        self,
        since: Optional[date] = None,
        till: Optional[date] = None,
        is_traded: Optional[bool] = None,
        start: int = 0,
        limit: int = PAGE_LIMIT,
    ) -> PageCursor[IssAmortization]:
        return self._bondization(
            "amortizations", parse_amortization, since, till, is_traded, start, limit
        )

    def list_offers(
        self,
        since: Optional[date] = None,
        till: Optional[date] = None,
        is_traded: Optional[bool] = None,
        start: int = 0,
        limit: int = PAGE_LIMIT,
    ) -> PageCursor[IssOffer]:
        return self._bondization("offers", parse_offer, since, till, is_traded, start, limit)

    # ============================================================
    # 市場データ / 証券説明
    # ============================================================
    def get_market_data(self) -> list[IssMarketData]:
        """全債券の現在の市場データ (ページングなし)"""
        payload = self.get_json(ISS_MARKETDATA_PATH, {"iss.only": "securities,marketdata"})
        return parse_market_data(payload)

    def get_security_description(self, security_id: str) -> SecurityDescription:
        path = ISS_SECURITY_DESC_PATH.format(
            security_id=quote(security_id, safe="")
        )
        payload = self.get_json(path, {"iss.only": "description"})
        return parse_description(payload)
