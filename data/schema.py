"""
ストアのテーブル定義 (SQLAlchemy ORM)

事実テーブル: issuers, bonds, payments, offers, marketdata
派生テーブル: cashflows, reports, collection_bonds (取得のたびに全件再構築)
"""
from datetime import datetime

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Index, Integer,
    MetaData, String,
)
from sqlalchemy.orm import declarative_base

# 制約名の命名規則
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)
Base = declarative_base(metadata=metadata)


class Issuer(Base):
    __tablename__ = "issuers"

    id = Column(Integer, primary_key=True)
    moex_id = Column(Integer, nullable=False, unique=True)
    name = Column(String(512), nullable=False)
    inn = Column(String(32), nullable=True)     # 納税者番号
    okpo = Column(String(32), nullable=True)    # 登録コード
    created = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Bond(Base):
    __tablename__ = "bonds"

    id = Column(Integer, primary_key=True)
    issuer_id = Column(Integer, ForeignKey("issuers.id"), nullable=False)
    moex_id = Column(Integer, nullable=False, unique=True)
    security_id = Column(String(64), nullable=False, unique=True)
    isin = Column(String(32), nullable=False, unique=True)
    short_name = Column(String(256), nullable=False, default="")
    full_name = Column(String(512), nullable=False, default="")
    is_traded = Column(Boolean, nullable=False, default=False)
    qualified_only = Column(Boolean, nullable=False, default=False)
    high_risk = Column(Boolean, nullable=False, default=False)
    type = Column(String(32), nullable=False)
    primary_board_id = Column(String(16), nullable=False, default="")
    market_price_board_id = Column(String(16), nullable=False, default="")
    initial_face_value = Column(Float, nullable=False)
    face_unit = Column(String(8), nullable=False)
    issue_date = Column(Date, nullable=True)
    maturity_date = Column(Date, nullable=True)
    listing_level = Column(Integer, nullable=False)
    coupon_frequency = Column(Integer, nullable=False, default=0)
    created = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_bonds_type", "type"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    bond_id = Column(Integer, ForeignKey("bonds.id"), nullable=False)
    type = Column(String(1), nullable=False)    # PaymentType
    date = Column(Date, nullable=False)
    value = Column(Float, nullable=False, default=0.0)
    value_percent = Column(Float, nullable=False, default=0.0)
    value_rub = Column(Float, nullable=False, default=0.0)
    record_date = Column(Date, nullable=True)   # クーポンのみ
    start_date = Column(Date, nullable=True)    # クーポンのみ
    created = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payments_unique", "bond_id", "date", "type", unique=True),
        Index("ix_payments_type_date", "type", "date"),
    )


class Offer(Base):
    __tablename__ = "offers"

    id = Column(Integer, primary_key=True)
    bond_id = Column(Integer, ForeignKey("bonds.id"), nullable=False)
    issue_value = Column(Float, nullable=True)
    date = Column(Date, nullable=True)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    face_value = Column(Float, nullable=True)
    face_unit = Column(String(8), nullable=False, default="")
    price = Column(Float, nullable=True)
    value = Column(Float, nullable=True)
    agent = Column(String(512), nullable=False, default="")
    type = Column(String(32), nullable=True)    # OfferType
    created = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_offers_unique", "bond_id", "date", "start_date", "end_date", unique=True),
    )


class MarketData(Base):
    __tablename__ = "marketdata"

    id = Column(Integer, primary_key=True)
    bond_id = Column(Integer, ForeignKey("bonds.id"), nullable=False, unique=True)
    time = Column(DateTime, nullable=False)
    face_value = Column(Float, nullable=True)
    currency = Column(String(8), nullable=True)
    last = Column(Float, nullable=True)
    last_change = Column(Float, nullable=True)
    close_price = Column(Float, nullable=True)
    legal_close_price = Column(Float, nullable=True)
    accrued_interest = Column(Float, nullable=True)


# ============================================================
# 派生テーブル
# ============================================================
class CashFlow(Base):
    __tablename__ = "cashflows"

    id = Column(Integer, primary_key=True)
    bond_id = Column(Integer, nullable=False, index=True)
    date = Column(Date, nullable=False)
    type = Column(String(1), nullable=False)
    value_rub = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_cashflows_unique", "bond_id", "date", "type", unique=True),
    )


class ReportRow(Base):
    __tablename__ = "reports"

    bond_id = Column(Integer, primary_key=True)
    days_till_maturity = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False)
    open_price = Column(Float, nullable=False)
    open_accrued_interest = Column(Float, nullable=False)
    open_face_value = Column(Float, nullable=False)
    open_fee = Column(Float, nullable=False)
    open_value = Column(Float, nullable=False)
    coupon_payments = Column(Float, nullable=False)
    amortization_payments = Column(Float, nullable=False)
    maturity_payments = Column(Float, nullable=False)
    taxes = Column(Float, nullable=False)
    revenue = Column(Float, nullable=False)
    profit_loss = Column(Float, nullable=False)
    relative_profit_loss = Column(Float, nullable=False)
    interest_rate = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_reports_interest_rate", "interest_rate"),
    )


class CollectionBond(Base):
    __tablename__ = "collection_bonds"

    id = Column(Integer, primary_key=True)
    collection_id = Column(String(32), nullable=False)
    duration = Column(Integer, nullable=False)
    bond_id = Column(Integer, nullable=False)
    rank = Column(Integer, nullable=False)      # 1 = 最高利回り

    __table_args__ = (
        Index("ix_collection_bonds_key", "collection_id", "duration", "rank"),
    )


# 派生テーブルの列 (pandas DataFrame との受け渡しに使う)
REPORT_COLUMNS = [c.name for c in ReportRow.__table__.columns]
CASHFLOW_COLUMNS = ["bond_id", "date", "type", "value_rub"]
