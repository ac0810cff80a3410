"""
MOEX債券レコメンドシステム - データモデル定義
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Optional


# ============================================================
# 区分
# ============================================================
class BondType(str, Enum):
    """債券の種類 (ISS の type 値)"""
    SUBFEDERAL = "subfederal_bond"
    OFZ = "ofz_bond"
    EXCHANGE = "exchange_bond"
    CENTRAL_BANK = "cb_bond"
    MUNICIPAL = "municipal_bond"
    CORPORATE = "corporate_bond"
    IFI = "ifi_bond"
    EURO = "euro_bond"


class PaymentType(str, Enum):
    """支払の種類"""
    COUPON = "C"
    AMORTIZATION = "A"
    MATURITY = "M"
    OFFER = "O"     # 旧データのみ


class OfferType(str, Enum):
    """オファーの種類"""
    GENERIC = "offer"
    COMPLETED = "completed_offer"
    CANCELED = "canceled_offer"
    DEFAULT = "default_offer"
    TECH_DEFAULT = "tech_default_offer"
    MATURITY = "maturity"
    CANCELED_MATURITY = "canceled_maturity"


# ISS の offertype → OfferType
ISS_OFFER_TYPES = {
    "Оферта": OfferType.GENERIC,
    "Оферта (состоялось)": OfferType.COMPLETED,
    "Оферта (отменено)": OfferType.CANCELED,
    "Оферта (дефолт)": OfferType.DEFAULT,
    "Оферта (технический дефолт)": OfferType.TECH_DEFAULT,
    "Оферта/Погашение": OfferType.MATURITY,
    "Оферта/Погашение(отменено)": OfferType.CANCELED_MATURITY,
}

# ISS の data_source (それ以外は "amortization" = 部分償還)
MATURITY_SOURCE = "maturity"


# ============================================================
# ISS レコード
# ============================================================
@dataclass
class IssSecurity:
    """証券一覧の1行"""
    id: int                             # ISS 内部ID
    security_id: str                    # SECID
    isin: str
    short_name: str = ""
    full_name: str = ""
    reg_number: str = ""
    is_traded: bool = False
    issuer_id: int = 0
    issuer_name: str = ""
    issuer_inn: Optional[str] = None
    issuer_okpo: Optional[str] = None
    type: str = ""
    primary_board_id: str = ""
    market_price_board_id: str = ""


@dataclass
class IssCoupon:
    """クーポン支払"""
    isin: str
    name: str = ""
    issue_value: Optional[float] = None
    coupon_date: Optional[date] = None
    record_date: Optional[date] = None
    start_date: Optional[date] = None
    initial_face_value: Optional[float] = None
    face_value: Optional[float] = None
    face_unit: str = ""
    value: Optional[float] = None
    value_percent: Optional[float] = None
    value_rub: Optional[float] = None

    @property
    def payment_date(self) -> Optional[date]:
        """クーポン日 → 開始日 → 基準日 の順で代表日付を決める"""
        return self.coupon_date or self.start_date or self.record_date


@dataclass
class IssAmortization:
    """償還・部分償還"""
    isin: str
    name: str = ""
    issue_value: Optional[float] = None
    amort_date: Optional[date] = None
    initial_face_value: Optional[float] = None
    face_value: Optional[float] = None
    face_unit: str = ""
    value: Optional[float] = None
    value_percent: Optional[float] = None
    value_rub: Optional[float] = None
    data_source: str = ""

    @property
    def is_maturity(self) -> bool:
        return self.data_source == MATURITY_SOURCE


@dataclass
class IssOffer:
    """オファー"""
    isin: str
    name: str = ""
    issue_value: Optional[float] = None
    offer_date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    face_value: Optional[float] = None
    face_unit: str = ""
    price: Optional[float] = None
    value: Optional[float] = None
    agent: str = ""
    offer_type: Optional[str] = None

    @property
    def representative_date(self) -> Optional[date]:
        """オファー日 → 開始日 → 終了日 の順で代表日付を決める"""
        return self.offer_date or self.start_date or self.end_date


@dataclass
class IssMarketData:
    """市場データ (securities セクションと marketdata セクションをマージしたもの)"""
    security_id: str
    board_id: str
    accrued_interest: Optional[float] = None
    face_value: Optional[float] = None
    currency: Optional[str] = None
    last: Optional[float] = None
    last_change: Optional[float] = None
    close_price: Optional[float] = None
    legal_close_price: Optional[float] = None
    time: Optional[datetime] = None


@dataclass
class SecurityProperty:
    """証券説明のプロパティ (name / value / type)"""
    name: str
    value: str
    type: str           # "string", "date", "number", "boolean"


@dataclass
class SecurityDescription:
    """証券説明 (プロパティ名 → プロパティ)"""
    properties: dict[str, SecurityProperty] = field(default_factory=dict)


# ============================================================
# レポート / 提案
# ============================================================
@dataclass
class CashFlowItem:
    """将来のキャッシュフロー1件"""
    type: PaymentType
    date: date
    value_rub: float


@dataclass
class Report:
    """銘柄ごとの収益レポート (1口あたり)"""
    bond_id: int
    isin: str
    security_id: str
    short_name: str
    full_name: str
    issuer_name: str
    bond_type: str
    high_risk: bool
    maturity_date: Optional[date]
    days_till_maturity: int
    currency: str
    open_price: float
    open_accrued_interest: float
    open_face_value: float
    open_fee: float
    open_value: float
    coupon_payments: float
    amortization_payments: float
    maturity_payments: float
    taxes: float
    revenue: float
    profit_loss: float
    relative_profit_loss: float
    interest_rate: float
    cash_flow: list[CashFlowItem] = field(default_factory=list)

    def scaled(self, quantity: int) -> Report:
        """金額項目を数量倍したコピーを返す (価格・利回りはそのまま)"""
        return replace(
            self,
            open_fee=self.open_fee * quantity,
            open_value=self.open_value * quantity,
            coupon_payments=self.coupon_payments * quantity,
            amortization_payments=self.amortization_payments * quantity,
            maturity_payments=self.maturity_payments * quantity,
            taxes=self.taxes * quantity,
            revenue=self.revenue * quantity,
            profit_loss=self.profit_loss * quantity,
            cash_flow=[
                CashFlowItem(c.type, c.date, c.value_rub * quantity)
                for c in self.cash_flow
            ],
        )


@dataclass
class Position:
    """提案ポートフォリオの1ポジション"""
    report: Report                      # 数量倍済み
    quantity: int
    weight: float = 0.0                 # ポートフォリオ内の比率 (全ポジション確定後に計算)


@dataclass
class SuggestPart:
    """コレクションごとの配分指定"""
    collection_id: str
    weight: float


@dataclass
class SuggestRequest:
    amount: float
    max_duration: int                   # 1..5 (年)
    parts: list[SuggestPart] = field(default_factory=list)


@dataclass
class SuggestResult:
    positions: list[Position] = field(default_factory=list)
    amount: float = 0.0                 # 投資総額
    duration_days: int = 0              # ポジション中の最長残存日数
    profit_loss: float = 0.0
    relative_profit_loss: float = 0.0
    interest_rate: float = 0.0


@dataclass
class SearchResult:
    """銘柄検索の結果 (1ページ分)"""
    items: list = field(default_factory=list)
    total_count: int = 0
    skip: int = 0
    limit: int = 0
