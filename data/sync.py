"""
ISS → ストア 同期ワーカー

    SecuritiesWorker  … 証券一覧から発行体・債券を作成
    PaymentsWorker    … クーポン・償還・満期償還を作成 (前回取得日以降のみ)
    OffersWorker      … オファーを作成
    MarketDataWorker  … 市場データを上書き

作成はすべて冪等 (既存なら何もしない)。トランザクションの境界は呼び出し側が持つ。
キャンセル (threading.Event) は1件ごとに確認し、セット済みなら FetchCancelledError。
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date
from typing import Optional

from config import CURRENCY_ALIASES
from data.iss_client import ISSClient
from data.parser_iss import (
    ISSUE_DATE, MATURITY_DATE, INITIAL_FACE_VALUE, FACE_UNIT, LISTING_LEVEL,
    QUALIFIED_INVESTORS, COUPON_FREQUENCY, HIGH_RISK,
    property_as_bool, property_as_date, property_as_number, property_as_string,
)
from errors import AlreadyExistsError, FetchCancelledError, MissingRequiredPropertyError, NotFoundError
from models import (
    IssSecurity, IssCoupon, IssAmortization, IssOffer, IssMarketData,
    PaymentType, ISS_OFFER_TYPES,
)

logger = logging.getLogger(__name__)


def normalize_currency(code: Optional[str]) -> Optional[str]:
    """ISS の旧通貨コード (SUR, RUR) を RUB にそろえる"""
    if code is None:
        return None
    return CURRENCY_ALIASES.get(code, code)


def check_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise FetchCancelledError("取得処理がキャンセルされました")


# ============================================================
# 統計
# ============================================================
@dataclass
class BondFetchStats:
    processed: int = 0
    new_issuers: int = 0
    new_bonds: int = 0


@dataclass
class PaymentFetchStats:
    processed: int = 0
    new_coupons: int = 0
    new_amortizations: int = 0
    new_maturities: int = 0


@dataclass
class OfferFetchStats:
    processed: int = 0
    new_offers: int = 0


@dataclass
class MarketDataFetchStats:
    processed: int = 0
    updated: int = 0


# ============================================================
# bond_id メモ
# ============================================================
class BondIdMemo:
    """
    ISIN / SECID → bond_id のキャッシュ。

    見つからなかったキーも記録し (値 0)、同じ取得処理の中で再検索しない。
    取得処理ごとに新しく作ること (処理の間に作成された債券を見落とすため)。
    """
    MISSING = 0

    def __init__(self):
        self._by_isin: dict[str, int] = {}
        self._by_security_id: dict[str, int] = {}

    def by_isin(self, tx, isin: str) -> Optional[int]:
        return self._lookup(self._by_isin, isin, tx.bonds.get_by_isin)

    def by_security_id(self, tx, security_id: str) -> Optional[int]:
        return self._lookup(self._by_security_id, security_id, tx.bonds.get_by_security_id)

    def _lookup(self, cache: dict[str, int], key: str, find) -> Optional[int]:
        if key in cache:
            bond_id = cache[key]
            return None if bond_id == self.MISSING else bond_id

        try:
            bond_id = find(key).id
        except NotFoundError:
            cache[key] = self.MISSING
            return None

        cache[key] = bond_id
        return bond_id


# ============================================================
# 証券 (発行体・債券)
# ============================================================
class SecuritiesWorker:

    def __init__(self, client: ISSClient, tx):
        self.client = client
        self.tx = tx
        self.stats = BondFetchStats()

    def run(self, cancel: Optional[threading.Event] = None) -> BondFetchStats:
        started = time.monotonic()
        cursor = self.client.list_securities(engine="stock", market="bonds", is_trading=True)

        for securities in cursor:
            for security in securities:
                check_cancelled(cancel)
                issuer_id = self._resolve_issuer(security)
                self._create_bond(security, issuer_id)
                self.stats.processed += 1
            logger.info(f"債券取得: {self.stats.processed} 件処理済み")

        logger.info(
            f"債券取得完了: 新規発行体 {self.stats.new_issuers}, "
            f"新規債券 {self.stats.new_bonds} ({time.monotonic() - started:.1f}秒)"
        )
        return self.stats

    def _resolve_issuer(self, security: IssSecurity) -> int:
        try:
            return self.tx.issuers.get_by_moex_id(security.issuer_id).id
        except NotFoundError:
            pass

        try:
            issuer = self.tx.issuers.create(
                moex_id=security.issuer_id,
                name=security.issuer_name,
                inn=security.issuer_inn,
                okpo=security.issuer_okpo,
            )
        except AlreadyExistsError:
            return self.tx.issuers.get_by_moex_id(security.issuer_id).id

        self.stats.new_issuers += 1
        logger.info(f"新規発行体: #{issuer.moex_id} \"{issuer.name}\"")
        return issuer.id

    def _create_bond(self, security: IssSecurity, issuer_id: int) -> None:
        if self.tx.bonds.exists(security.id, security.isin, security.security_id):
            return

        props = self._security_props(security)
        try:
            bond = self.tx.bonds.create(
                issuer_id=issuer_id,
                moex_id=security.id,
                security_id=security.security_id,
                isin=security.isin,
                short_name=security.short_name,
                full_name=security.full_name,
                is_traded=security.is_traded,
                type=security.type,
                primary_board_id=security.primary_board_id,
                market_price_board_id=security.market_price_board_id,
                **props,
            )
        except AlreadyExistsError:
            return

        self.stats.new_bonds += 1
        logger.info(f"新規債券: #{bond.moex_id} {bond.isin} \"{bond.short_name}\"")

    def _security_props(self, security: IssSecurity) -> dict:
        """証券説明から債券の属性を取り出す (額面・額面通貨・上場区分は必須)"""
        desc = self.client.get_security_description(security.security_id)

        initial_face_value = property_as_number(desc, INITIAL_FACE_VALUE)
        if initial_face_value is None:
            raise MissingRequiredPropertyError(INITIAL_FACE_VALUE, security.isin)

        face_unit = property_as_string(desc, FACE_UNIT)
        if face_unit is None:
            raise MissingRequiredPropertyError(FACE_UNIT, security.isin)

        listing_level = property_as_number(desc, LISTING_LEVEL)
        if listing_level is None:
            raise MissingRequiredPropertyError(LISTING_LEVEL, security.isin)

        coupon_frequency = property_as_number(desc, COUPON_FREQUENCY)

        return {
            "qualified_only": property_as_bool(desc, QUALIFIED_INVESTORS),
            "high_risk": property_as_bool(desc, HIGH_RISK),
            "initial_face_value": initial_face_value,
            "face_unit": normalize_currency(face_unit),
            "issue_date": property_as_date(desc, ISSUE_DATE),
            "maturity_date": property_as_date(desc, MATURITY_DATE),
            "listing_level": int(listing_level),
            "coupon_frequency": int(coupon_frequency) if coupon_frequency is not None else 0,
        }


# ============================================================
# 支払 (クーポン・償還)
# ============================================================
def payment_watermark(tx, payment_type: PaymentType, today: date) -> Optional[date]:
    """
    前回取得済みの最新支払日。

    最新日が今日の場合は None (当日分はまだ確定していない可能性があるため全期間を再取得)。
    """
    try:
        last = tx.payments.last(payment_type)
    except NotFoundError:
        return None

    if last.date == today:
        return None
    return last.date


class PaymentsWorker:

    def __init__(self, client: ISSClient, tx, memo: BondIdMemo):
        self.client = client
        self.tx = tx
        self.memo = memo
        self.stats = PaymentFetchStats()

    def run(self, cancel: Optional[threading.Event] = None, today: Optional[date] = None) -> PaymentFetchStats:
        started = time.monotonic()
        today = today or date.today()

        self.fetch_coupons(cancel, today)
        self.fetch_amortizations(cancel, today)

        logger.info(
            f"支払取得完了: クーポン {self.stats.new_coupons}, 償還 {self.stats.new_amortizations}, "
            f"満期償還 {self.stats.new_maturities} ({time.monotonic() - started:.1f}秒)"
        )
        return self.stats

    def fetch_coupons(self, cancel: Optional[threading.Event], today: date) -> None:
        since = payment_watermark(self.tx, PaymentType.COUPON, today)
        count = 0
        for coupons in self.client.list_coupons(since=since):
            for coupon in coupons:
                check_cancelled(cancel)
                count += 1
                self._create_coupon(coupon)
            logger.info(f"クーポン取得: {count} 件処理済み")
        self.stats.processed += count

    def fetch_amortizations(self, cancel: Optional[threading.Event], today: date) -> None:
        since_amort = payment_watermark(self.tx, PaymentType.AMORTIZATION, today)
        since_mat = payment_watermark(self.tx, PaymentType.MATURITY, today)

        since = since_amort
        if since_amort is not None and since_mat is not None and since_mat > since_amort:
            since = since_mat

        count = 0
        for amortizations in self.client.list_amortizations(since=since):
            for amortization in amortizations:
                check_cancelled(cancel)
                count += 1
                self._create_amortization(amortization)
            logger.info(f"償還取得: {count} 件処理済み")
        self.stats.processed += count

    def _create_coupon(self, coupon: IssCoupon) -> None:
        bond_id = self.memo.by_isin(self.tx, coupon.isin)
        if bond_id is None:
            return

        payment_date = coupon.payment_date
        if payment_date is None:
            raise MissingRequiredPropertyError("coupondate", coupon.isin)

        try:
            self.tx.payments.create(
                bond_id=bond_id,
                payment_type=PaymentType.COUPON,
                payment_date=payment_date,
                value=coupon.value or 0.0,
                value_percent=coupon.value_percent or 0.0,
                value_rub=coupon.value_rub or 0.0,
                record_date=coupon.record_date,
                start_date=coupon.start_date,
            )
        except AlreadyExistsError:
            return
        self.stats.new_coupons += 1

    def _create_amortization(self, amortization: IssAmortization) -> None:
        bond_id = self.memo.by_isin(self.tx, amortization.isin)
        if bond_id is None:
            return

        if amortization.amort_date is None:
            raise MissingRequiredPropertyError("amortdate", amortization.isin)

        payment_type = PaymentType.MATURITY if amortization.is_maturity else PaymentType.AMORTIZATION
        try:
            self.tx.payments.create(
                bond_id=bond_id,
                payment_type=payment_type,
                payment_date=amortization.amort_date,
                value=amortization.value or 0.0,
                value_percent=amortization.value_percent or 0.0,
                value_rub=amortization.value_rub or 0.0,
            )
        except AlreadyExistsError:
            return

        if payment_type == PaymentType.MATURITY:
            self.stats.new_maturities += 1
        else:
            self.stats.new_amortizations += 1


# ============================================================
# オファー
# ============================================================
class OffersWorker:

    def __init__(self, client: ISSClient, tx, memo: BondIdMemo):
        self.client = client
        self.tx = tx
        self.memo = memo
        self.stats = OfferFetchStats()

    def run(self, cancel: Optional[threading.Event] = None) -> OfferFetchStats:
        started = time.monotonic()
        for offers in self.client.list_offers():
            for offer in offers:
                check_cancelled(cancel)
                self.stats.processed += 1
                self._create_offer(offer)
            logger.info(f"オファー取得: {self.stats.processed} 件処理済み")

        logger.info(
            f"オファー取得完了: 新規 {self.stats.new_offers} ({time.monotonic() - started:.1f}秒)"
        )
        return self.stats

    def _create_offer(self, offer: IssOffer) -> None:
        bond_id = self.memo.by_isin(self.tx, offer.isin)
        if bond_id is None:
            return

        offer_type = None
        if offer.offer_type is not None:
            mapped = ISS_OFFER_TYPES.get(offer.offer_type)
            offer_type = mapped.value if mapped else offer.offer_type

        try:
            self.tx.offers.create(
                bond_id=bond_id,
                offer_date=offer.representative_date,
                start_date=offer.start_date,
                end_date=offer.end_date,
                issue_value=offer.issue_value,
                face_value=offer.face_value,
                face_unit=normalize_currency(offer.face_unit) or "",
                price=offer.price,
                value=offer.value,
                agent=offer.agent,
                type=offer_type,
            )
        except AlreadyExistsError:
            return
        self.stats.new_offers += 1


# ============================================================
# 市場データ
# ============================================================
class MarketDataWorker:

    def __init__(self, client: ISSClient, tx, memo: BondIdMemo):
        self.client = client
        self.tx = tx
        self.memo = memo
        self.stats = MarketDataFetchStats()

    def run(self, cancel: Optional[threading.Event] = None) -> MarketDataFetchStats:
        started = time.monotonic()
        items = self.client.get_market_data()

        for item in items:
            check_cancelled(cancel)
            self.stats.processed += 1
            self._put(item)

        logger.info(
            f"市場データ取得完了: {self.stats.processed} 件中 {self.stats.updated} 件更新 "
            f"({time.monotonic() - started:.1f}秒)"
        )
        return self.stats

    def _put(self, item: IssMarketData) -> None:
        bond_id = self.memo.by_security_id(self.tx, item.security_id)
        if bond_id is None or item.time is None:
            return

        self.tx.market_data.put(
            bond_id,
            time=item.time,
            face_value=item.face_value,
            currency=normalize_currency(item.currency),
            last=item.last,
            last_change=item.last_change,
            close_price=item.close_price,
            legal_close_price=item.legal_close_price,
            accrued_interest=item.accrued_interest,
        )
        self.stats.updated += 1
