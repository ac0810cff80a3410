from __future__ import annotations

import os
import sys
from datetime import date, timedelta
from urllib.parse import urlparse

import pytest
import requests

# Add project root to sys.path for module imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from data.iss_client import ISSClient
from data.schema import REPORT_COLUMNS
from data.storage import Store

TODAY = date(2024, 1, 15)

SECURITIES_PATH = "/iss/securities.json"
DESCRIPTION_PREFIX = "/iss/securities/"
BONDIZATION_PATH = "/iss/statistics/engines/stock/markets/bonds/bondization.json"
MARKETDATA_PATH = "/iss/engines/stock/markets/bonds/securities.json"

# bondization セクション → `from` で絞り込む日付列
SECTION_DATE_FIELDS = {
    "coupons": "coupondate",
    "amortizations": "amortdate",
    "offers": "offerdate",
}


def extended(**sections) -> list:
    """iss.json=extended 形式のレスポンスを作る"""
    return [{"charsetinfo": {"name": "utf-8"}}, dict(sections)]


class FakeResponse:
    def __init__(self, payload, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error", response=self)


class FakeISS:
    """
    ISS を模した requests.Session 代わり。

    行データをリストで持ち、start / limit / from でページングと絞り込みを行う。
    routes に path → callable(params) を入れると、その path だけ差し替えられる。
    """

    def __init__(self):
        self.headers: dict = {}
        self.calls: list[tuple[str, dict]] = []
        self.routes: dict = {}
        self.securities: list[dict] = []
        self.descriptions: dict[str, list[dict]] = {}
        self.coupons: list[dict] = []
        self.amortizations: list[dict] = []
        self.offers: list[dict] = []
        self.market_securities: list[dict] = []
        self.market_rows: list[dict] = []

    def get(self, url, params=None, timeout=None):
        params = dict(params or {})
        path = urlparse(url).path
        self.calls.append((path, params))

        if path in self.routes:
            result = self.routes[path](params)
            return result if isinstance(result, FakeResponse) else FakeResponse(result)

        if path == SECURITIES_PATH:
            return FakeResponse(extended(securities=self._page(self.securities, params)))
        if path == BONDIZATION_PATH:
            section = params["iss.only"]
            rows = getattr(self, section)
            since = params.get("from")
            if since:
                field = SECTION_DATE_FIELDS[section]
                rows = [r for r in rows if (r.get(field) or "") >= since]
            return FakeResponse(extended(**{section: self._page(rows, params)}))
        if path == MARKETDATA_PATH:
            return FakeResponse(extended(
                securities=list(self.market_securities),
                marketdata=list(self.market_rows),
            ))
        if path.startswith(DESCRIPTION_PREFIX):
            secid = path[len(DESCRIPTION_PREFIX):-len(".json")]
            return FakeResponse(extended(description=self.descriptions.get(secid, [])))

        return FakeResponse({"error": "not found"}, status_code=404)

    @staticmethod
    def _page(rows: list[dict], params: dict) -> list[dict]:
        start = int(params.get("start", 0))
        limit = int(params.get("limit", 100))
        return rows[start:start + limit]

    def calls_to(self, path: str, section: str | None = None) -> list[dict]:
        return [
            p for c_path, p in self.calls
            if c_path == path and (section is None or p.get("iss.only") == section)
        ]


# ============================================================
# ISS 行データ
# ============================================================
def security_row(moex_id: int, secid: str, isin: str, **overrides) -> dict:
    row = {
        "id": moex_id,
        "secid": secid,
        "isin": isin,
        "shortname": f"Bond {secid}",
        "name": f"Облигация {secid}",
        "regnumber": f"4B02-{moex_id}",
        "is_traded": 1,
        "emitent_id": 1,
        "emitent_title": "ПАО Ромашка",
        "emitent_inn": "5000000001",
        "emitent_okpo": "00000001",
        "type": "corporate_bond",
        "primary_boardid": "TQCB",
        "marketprice_boardid": "TQCB",
    }
    row.update(overrides)
    return row


def description_rows(
    maturity: date,
    face_unit: str = "SUR",
    listing_level: int = 2,
    high_risk: bool = False,
    qualified: bool = False,
    omit: tuple = (),
) -> list[dict]:
    rows = [
        {"name": "ISSUEDATE", "title": "Дата размещения", "value": "2020-01-10", "type": "date"},
        {"name": "MATDATE", "title": "Дата погашения", "value": maturity.isoformat(), "type": "date"},
        {"name": "INITIALFACEVALUE", "title": "Номинал", "value": "1000", "type": "number"},
        {"name": "FACEUNIT", "title": "Валюта", "value": face_unit, "type": "string"},
        {"name": "LISTLEVEL", "title": "Уровень листинга", "value": str(listing_level), "type": "number"},
        {"name": "COUPONFREQUENCY", "title": "Частота", "value": "2", "type": "number"},
        {"name": "ISQUALIFIEDINVESTORS", "title": "Квал", "value": "1" if qualified else "0", "type": "boolean"},
        {"name": "HIGHRISK", "title": "Риск", "value": "1" if high_risk else "0", "type": "boolean"},
    ]
    return [r for r in rows if r["name"] not in omit]


def coupon_row(isin: str, coupon_date, value: float) -> dict:
    return {
        "isin": isin,
        "name": f"Купон {isin}",
        "issuevalue": 1_000_000,
        "coupondate": coupon_date.isoformat() if coupon_date else None,
        "recorddate": None,
        "startdate": None,
        "initialfacevalue": 1000,
        "facevalue": 1000,
        "faceunit": "SUR",
        "value": value,
        "valueprc": 8.0,
        "value_rub": value,
    }


def amortization_row(isin: str, amort_date: date, value: float, source: str = "maturity") -> dict:
    return {
        "isin": isin,
        "name": f"Погашение {isin}",
        "issuevalue": 1_000_000,
        "amortdate": amort_date.isoformat(),
        "initialfacevalue": 1000,
        "facevalue": 1000,
        "faceunit": "SUR",
        "value": value,
        "valueprc": 100.0,
        "value_rub": value,
        "data_source": source,
    }


def offer_row(isin: str, offer_date=None, start=None, end=None, offer_type="Оферта") -> dict:
    def fmt(d):
        return d.isoformat() if d else "0000-00-00"

    return {
        "isin": isin,
        "name": f"Оферта {isin}",
        "issuevalue": 1_000_000,
        "offerdate": fmt(offer_date),
        "offerdatestart": fmt(start),
        "offerdateend": fmt(end),
        "facevalue": 1000,
        "faceunit": "SUR",
        "price": 100.0,
        "value": 1000.0,
        "agent": "Агент",
        "offertype": offer_type,
    }


# ============================================================
# 標準データセット
# ============================================================
CORP_MATURITY = date(2025, 7, 15)
OFZ_MATURITY = date(2025, 1, 10)
RISK_MATURITY = date(2024, 12, 1)


def populate_iss(fake: FakeISS) -> FakeISS:
    """
    社債 (約1.5年)・OFZ (約1年)・ハイリスク社債 (約1年) の3銘柄。
    """
    fake.securities = [
        security_row(101, "RU000A1", "RU000A100001"),
        security_row(
            102, "SU26200RMFS1", "RU000A100002",
            emitent_id=2, emitent_title="Минфин России", emitent_inn="7710168360",
            type="ofz_bond", primary_boardid="TQOB", marketprice_boardid="TQOB",
        ),
        security_row(103, "RU000A3", "RU000A100003"),
    ]
    fake.descriptions = {
        "RU000A1": description_rows(CORP_MATURITY),
        "SU26200RMFS1": description_rows(OFZ_MATURITY, listing_level=1),
        "RU000A3": description_rows(RISK_MATURITY, high_risk=True),
    }
    fake.coupons = [
        coupon_row("RU000A100001", date(2023, 7, 15), 40.0),
        coupon_row("RU000A100001", date(2024, 7, 15), 40.0),
        coupon_row("RU000A100001", date(2025, 1, 15), 40.0),
        coupon_row("RU000A100001", CORP_MATURITY, 40.0),
        coupon_row("RU000A100002", date(2024, 7, 10), 35.0),
        coupon_row("RU000A100002", OFZ_MATURITY, 35.0),
        coupon_row("RU000A100003", date(2024, 6, 1), 80.0),
        coupon_row("RU000A100003", RISK_MATURITY, 80.0),
        # 未登録の銘柄は無視される
        coupon_row("RU000UNKNOWN", date(2024, 6, 1), 10.0),
    ]
    fake.amortizations = [
        amortization_row("RU000A100001", CORP_MATURITY, 1000.0),
        amortization_row("RU000A100002", OFZ_MATURITY, 1000.0),
        amortization_row("RU000A100003", RISK_MATURITY, 1000.0),
    ]
    fake.offers = [
        offer_row("RU000A100001", date(2024, 7, 15), date(2024, 7, 1), date(2024, 7, 10)),
        offer_row("RU000A100002", offer_type="Оферта (отменено)"),
    ]
    fake.market_securities = [
        {"SECID": "RU000A1", "BOARDID": "TQCB", "ACCRUEDINT": 10.0, "FACEVALUE": 1000, "CURRENCYID": "SUR"},
        {"SECID": "SU26200RMFS1", "BOARDID": "TQOB", "ACCRUEDINT": 5.0, "FACEVALUE": 1000, "CURRENCYID": "SUR"},
        {"SECID": "RU000A3", "BOARDID": "TQCB", "ACCRUEDINT": 20.0, "FACEVALUE": 1000, "CURRENCYID": "SUR"},
        {"SECID": "XS0000000", "BOARDID": "TQCB", "ACCRUEDINT": 1.0, "FACEVALUE": 1000, "CURRENCYID": "USD"},
    ]
    fake.market_rows = [
        {"SECID": "RU000A1", "BOARDID": "TQCB", "LAST": 98.5, "LASTCHANGE": 0.1,
         "CLOSEPRICE": 98.0, "LCLOSEPRICE": 98.0, "SYSTIME": "2024-01-15 12:00:00"},
        {"SECID": "SU26200RMFS1", "BOARDID": "TQOB", "LAST": None, "LASTCHANGE": None,
         "CLOSEPRICE": 97.0, "LCLOSEPRICE": 96.5, "SYSTIME": "2024-01-15 12:00:00"},
        {"SECID": "RU000A3", "BOARDID": "TQCB", "LAST": 90.0, "LASTCHANGE": -0.5,
         "CLOSEPRICE": 90.5, "LCLOSEPRICE": 90.5, "SYSTIME": "2024-01-15 12:00:00"},
        {"SECID": "XS0000000", "BOARDID": "TQCB", "LAST": 101.0, "LASTCHANGE": 0.0,
         "CLOSEPRICE": 101.0, "LCLOSEPRICE": 101.0, "SYSTIME": "2024-01-15 12:00:00"},
    ]
    return fake


@pytest.fixture
def fake_iss():
    return FakeISS()


@pytest.fixture
def iss_data(fake_iss):
    return populate_iss(fake_iss)


@pytest.fixture
def client(fake_iss):
    return ISSClient("https://iss.test", session=fake_iss)


@pytest.fixture
def store(tmp_path):
    s = Store(f"sqlite:///{tmp_path / 'bonds.db'}")
    yield s
    s.dispose()


# ============================================================
# ストアへの直接投入
# ============================================================
def add_issuer(tx, moex_id: int = 1, name: str = "ПАО Ромашка", inn: str = "5000000001"):
    return tx.issuers.create(moex_id=moex_id, name=name, inn=inn)


def add_bond(tx, issuer_id: int, n: int, **overrides):
    fields = {
        "issuer_id": issuer_id,
        "moex_id": 1000 + n,
        "security_id": f"SEC{n}",
        "isin": f"RU000TEST{n:03d}",
        "short_name": f"Bond {n}",
        "full_name": f"Test bond {n}",
        "is_traded": True,
        "qualified_only": False,
        "high_risk": False,
        "type": "corporate_bond",
        "initial_face_value": 1000.0,
        "face_unit": "RUB",
        "maturity_date": TODAY + timedelta(days=300),
        "listing_level": 2,
    }
    fields.update(overrides)
    return tx.bonds.create(**fields)


def report_row(bond_id: int, **overrides) -> dict:
    row = {c: 0.0 for c in REPORT_COLUMNS}
    row.update({
        "bond_id": bond_id,
        "days_till_maturity": 300,
        "currency": "RUB",
        "open_price": 100.0,
        "open_face_value": 1000.0,
        "open_value": 1000.0,
        "interest_rate": 10.0,
    })
    row.update(overrides)
    return row
