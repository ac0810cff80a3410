"""
ISS レスポンスパーサー

iss.json=extended 形式のレスポンス (名前付きセクションの配列) を
models の ISS レコードに変換する。

    [
        {"charsetinfo": {"name": "utf-8"}},
        {"securities": [{...}, {...}]}
    ]

セクションキーが存在しない場合は空リストと同じ扱い (=データなし)。
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Iterator, Optional

from errors import UpstreamError
from models import (
    IssSecurity, IssCoupon, IssAmortization, IssOffer, IssMarketData,
    SecurityProperty, SecurityDescription,
)

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# 「日付なし」を表す値
NULL_DATES = ("", "0000-00-00")


# ============================================================
# エンベロープ
# ============================================================
def iter_section(payload: Any, name: str) -> Iterator[dict]:
    """
    extended JSON から指定セクションの行を順に返す。

    Args:
        payload: レスポンスの JSON (list であること)
        name: セクション名 ("securities", "coupons", ...)
    """
    if not isinstance(payload, list):
        raise UpstreamError(f"ISSレスポンスが配列ではありません (section={name})")

    for block in payload:
        if not isinstance(block, dict):
            raise UpstreamError(f"ISSレスポンスの要素がオブジェクトではありません (section={name})")
        rows = block.get(name)
        if rows is None:
            continue
        if not isinstance(rows, list):
            raise UpstreamError(f"セクション {name} が配列ではありません")
        for row in rows:
            if not isinstance(row, dict):
                raise UpstreamError(f"セクション {name} の行がオブジェクトではありません")
            yield row


# ============================================================
# 値の変換
# ============================================================
def parse_nullable_date(value: Any) -> Optional[date]:
    """
    日付をパースする。None / "" / "0000-00-00" は「なし」として None を返す。
    """
    if value is None:
        return None
    if not isinstance(value, str):
        raise UpstreamError(f"日付が文字列ではありません: {value!r}")

    s = value.strip()
    if s in NULL_DATES:
        return None
    try:
        return datetime.strptime(s, DATE_FORMAT).date()
    except ValueError as e:
        raise UpstreamError(f"日付を解釈できません: {value!r}") from e


def parse_date(value: Any) -> date:
    d = parse_nullable_date(value)
    if d is None:
        raise UpstreamError(f"日付がありません: {value!r}")
    return d


def parse_nullable_datetime(value: Any) -> Optional[datetime]:
    """日時 (YYYY-MM-DD HH:MM:SS) をパースする"""
    if value is None:
        return None
    if not isinstance(value, str):
        raise UpstreamError(f"日時が文字列ではありません: {value!r}")

    s = value.strip()
    if not s or s.startswith("0000-00-00"):
        return None
    try:
        return datetime.strptime(s, DATETIME_FORMAT)
    except ValueError as e:
        raise UpstreamError(f"日時を解釈できません: {value!r}") from e


def _number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise UpstreamError(f"数値ではありません: {value!r}")
    return float(value)


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _int(value: Any) -> int:
    n = _number(value)
    return int(n) if n is not None else 0


# ============================================================
# レコード
# ============================================================
def parse_security(row: dict) -> IssSecurity:
    return IssSecurity(
        id=_int(row.get("id")),
        security_id=_text(row.get("secid")),
        isin=_text(row.get("isin")),
        short_name=_text(row.get("shortname")),
        full_name=_text(row.get("name")),
        reg_number=_text(row.get("regnumber")),
        is_traded=_int(row.get("is_traded")) == 1,
        issuer_id=_int(row.get("emitent_id")),
        issuer_name=_text(row.get("emitent_title")),
        issuer_inn=_optional_text(row.get("emitent_inn")),
        issuer_okpo=_optional_text(row.get("emitent_okpo")),
        type=_text(row.get("type")),
        primary_board_id=_text(row.get("primary_boardid")),
        market_price_board_id=_text(row.get("marketprice_boardid")),
    )


def parse_coupon(row: dict) -> IssCoupon:
    return IssCoupon(
        isin=_text(row.get("isin")),
        name=_text(row.get("name")),
        issue_value=_number(row.get("issuevalue")),
        coupon_date=parse_nullable_date(row.get("coupondate")),
        record_date=parse_nullable_date(row.get("recorddate")),
        start_date=parse_nullable_date(row.get("startdate")),
        initial_face_value=_number(row.get("initialfacevalue")),
        face_value=_number(row.get("facevalue")),
        face_unit=_text(row.get("faceunit")),
        value=_number(row.get("value")),
        value_percent=_number(row.get("valueprc")),
        value_rub=_number(row.get("value_rub")),
    )


def parse_amortization(row: dict) -> IssAmortization:
    return IssAmortization(
        isin=_text(row.get("isin")),
        name=_text(row.get("name")),
        issue_value=_number(row.get("issuevalue")),
        amort_date=parse_nullable_date(row.get("amortdate")),
        initial_face_value=_number(row.get("initialfacevalue")),
        face_value=_number(row.get("facevalue")),
        face_unit=_text(row.get("faceunit")),
        value=_number(row.get("value")),
        value_percent=_number(row.get("valueprc")),
        value_rub=_number(row.get("value_rub")),
        data_source=_text(row.get("data_source")),
    )


def parse_offer(row: dict) -> IssOffer:
    return IssOffer(
        isin=_text(row.get("isin")),
        name=_text(row.get("name")),
        issue_value=_number(row.get("issuevalue")),
        offer_date=parse_nullable_date(row.get("offerdate")),
        start_date=parse_nullable_date(row.get("offerdatestart")),
        end_date=parse_nullable_date(row.get("offerdateend")),
        face_value=_number(row.get("facevalue")),
        face_unit=_text(row.get("faceunit")),
        price=_number(row.get("price")),
        value=_number(row.get("value")),
        agent=_text(row.get("agent")),
        offer_type=_optional_text(row.get("offertype")),
    )


def parse_market_data(payload: Any) -> list[IssMarketData]:
    """
    市場データのレスポンスをパースする。

    securities セクション (経過利息・額面・通貨) と marketdata セクション
    (価格・時刻) を (SECID, BOARDID) 単位でマージする。
    marketdata セクションがないブロックは無視する。
    """
    if not isinstance(payload, list):
        raise UpstreamError("ISSレスポンスが配列ではありません (section=marketdata)")

    merged: dict[tuple[str, str], IssMarketData] = {}

    def get_or_add(row: dict) -> IssMarketData:
        key = (_text(row.get("SECID")), _text(row.get("BOARDID")))
        item = merged.get(key)
        if item is None:
            item = IssMarketData(security_id=key[0], board_id=key[1])
            merged[key] = item
        return item

    for block in payload:
        if not isinstance(block, dict) or "marketdata" not in block:
            continue

        for row in iter_section([block], "securities"):
            item = get_or_add(row)
            item.accrued_interest = _number(row.get("ACCRUEDINT"))
            item.face_value = _number(row.get("FACEVALUE"))
            item.currency = _optional_text(row.get("CURRENCYID"))

        for row in iter_section([block], "marketdata"):
            item = get_or_add(row)
            item.last = _number(row.get("LAST"))
            item.last_change = _number(row.get("LASTCHANGE"))
            item.close_price = _number(row.get("CLOSEPRICE"))
            item.legal_close_price = _number(row.get("LCLOSEPRICE"))
            item.time = parse_nullable_datetime(row.get("SYSTIME"))

    return list(merged.values())


def parse_description(payload: Any) -> SecurityDescription:
    """証券説明 (description セクション) をパースする"""
    desc = SecurityDescription()
    for row in iter_section(payload, "description"):
        name = _text(row.get("name"))
        if not name:
            continue
        desc.properties[name] = SecurityProperty(
            name=name,
            value=_text(row.get("value")),
            type=_text(row.get("type")),
        )
    return desc


# ============================================================
# 証券説明プロパティ
# ============================================================
ISSUE_DATE = "ISSUEDATE"
MATURITY_DATE = "MATDATE"
INITIAL_FACE_VALUE = "INITIALFACEVALUE"
FACE_UNIT = "FACEUNIT"
LISTING_LEVEL = "LISTLEVEL"
QUALIFIED_INVESTORS = "ISQUALIFIEDINVESTORS"
COUPON_FREQUENCY = "COUPONFREQUENCY"
HIGH_RISK = "HIGHRISK"


def _property(desc: SecurityDescription, name: str, expected_type: str) -> Optional[SecurityProperty]:
    prop = desc.properties.get(name)
    if prop is None:
        return None
    if prop.type != expected_type:
        raise UpstreamError(
            f"プロパティ {name} の型が不正です: {prop.type} (期待値: {expected_type})"
        )
    return prop


def property_as_string(desc: SecurityDescription, name: str) -> Optional[str]:
    prop = _property(desc, name, "string")
    return prop.value if prop else None


def property_as_date(desc: SecurityDescription, name: str) -> Optional[date]:
    prop = _property(desc, name, "date")
    return parse_date(prop.value) if prop else None


def property_as_number(desc: SecurityDescription, name: str) -> Optional[float]:
    prop = _property(desc, name, "number")
    if prop is None:
        return None
    try:
        return float(prop.value)
    except ValueError as e:
        raise UpstreamError(f"プロパティ {name} が数値ではありません: {prop.value!r}") from e


def property_as_bool(desc: SecurityDescription, name: str, default: bool = False) -> bool:
    """boolean プロパティ ("0" / "1")。存在しない場合は default"""
    prop = _property(desc, name, "boolean")
    if prop is None:
        return default
    try:
        return int(prop.value) != 0
    except ValueError as e:
        raise UpstreamError(f"プロパティ {name} が真偽値ではありません: {prop.value!r}") from e
