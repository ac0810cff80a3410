"""
レポート計算モジュール

債券・市場データ・将来キャッシュフローから銘柄ごとの収益レポート
(取得価額・手数料・税・損益・年率利回り) を計算する。
入出力はすべて DataFrame で、ストアには依存しない。
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Iterable

import numpy as np
import pandas as pd

from config import BASE_CURRENCY, FEE_RATE, TAX_RATE, DAYS_PER_YEAR
from data.schema import REPORT_COLUMNS, CASHFLOW_COLUMNS
from models import CashFlowItem, PaymentType

logger = logging.getLogger(__name__)


def round2(values):
    """小数2桁に四捨五入 (0.5 は 0 から遠い方へ)"""
    values = np.asarray(values, dtype=float)
    return np.sign(values) * np.floor(np.abs(values) * 100 + 0.5) / 100


def _require(df: pd.DataFrame, columns: list[str], name: str) -> None:
    for col in columns:
        if col not in df.columns:
            raise ValueError(f"{name} に必須列がありません: {col}")


# ============================================================
# キャッシュフロー
# ============================================================
def build_cash_flows(
    payments: pd.DataFrame,
    bonds: pd.DataFrame,
    today: date,
) -> pd.DataFrame:
    """
    将来のキャッシュフローを抽出する。

    対象: ルーブル建て・取引中の債券の支払のうち、日付が today より後で額面ベースの値が正のもの。

    Args:
        payments: 支払 (bond_id, date, type, value, value_rub, ...)
        bonds: 債券 (id, face_unit, is_traded, ...)
        today: 基準日

    Returns:
        DataFrame with columns: bond_id, date, type, value_rub (日付 → 銘柄 → 種類 順)
    """
    if payments.empty or bonds.empty:
        return pd.DataFrame(columns=CASHFLOW_COLUMNS)

    _require(payments, ["bond_id", "date", "type", "value", "value_rub"], "payments")
    _require(bonds, ["id", "face_unit", "is_traded"], "bonds")

    eligible = bonds.loc[
        (bonds["face_unit"] == BASE_CURRENCY) & bonds["is_traded"].astype(bool), "id"
    ]

    df = payments[payments["bond_id"].isin(eligible)].copy()
    df["date"] = pd.to_datetime(df["date"])
    df = df[(df["date"] > pd.Timestamp(today)) & (df["value"] > 0)]

    df = df.sort_values(["date", "bond_id", "type"])
    df["date"] = df["date"].dt.date
    return df[CASHFLOW_COLUMNS].reset_index(drop=True)


# ============================================================
# レポート
# ============================================================
def compute_reports(
    bonds: pd.DataFrame,
    issuers: pd.DataFrame,
    market_data: pd.DataFrame,
    cash_flows: pd.DataFrame,
    today: date,
) -> pd.DataFrame:
    """
    銘柄ごとのレポートを計算する。

    ロジック:
        1. 債券 × 発行体 × 市場データを結合
        2. ルーブル建て・取引中・償還日が未来・価格/経過利息/額面あり・市場データの通貨がRUB の銘柄に限定
        3. 価格 = 直近約定 → 終値 → 法定終値 の順で最初に存在するもの
        4. 取得価額 = 価格% × 額面 / 100 + 経過利息、手数料 = 取得価額の 0.05%
        5. 将来のクーポン・償還・満期償還を合計して収入とする
        6. 税 = 価格 < 100 なら (クーポン + 償還 + 額面割引分) × 13%、
                それ以外は (クーポン + 償還) × 13%
        7. 損益 = 収入 - 取得価額 - 手数料 - 税、年率 = 損益率 / (残存日数 / 356.25)

    Args:
        bonds: 債券 (id, issuer_id, face_unit, is_traded, maturity_date, ...)
        issuers: 発行体 (id, ...)
        market_data: 市場データ (bond_id, last, close_price, legal_close_price,
                     accrued_interest, face_value, currency)
        cash_flows: build_cash_flows の結果
        today: 基準日

    Returns:
        DataFrame with columns REPORT_COLUMNS (bond_id 昇順)
    """
    if bonds.empty or market_data.empty:
        return pd.DataFrame(columns=REPORT_COLUMNS)

    _require(bonds, ["id", "issuer_id", "face_unit", "is_traded", "maturity_date"], "bonds")
    _require(market_data, [
        "bond_id", "last", "close_price", "legal_close_price",
        "accrued_interest", "face_value", "currency",
    ], "market_data")

    df = bonds[["id", "issuer_id", "face_unit", "is_traded", "maturity_date"]].merge(
        issuers[["id"]].rename(columns={"id": "issuer_id"}), on="issuer_id", how="inner",
    )
    df = df.rename(columns={"id": "bond_id"}).merge(market_data, on="bond_id", how="inner")

    today_ts = pd.Timestamp(today)
    df["maturity_date"] = pd.to_datetime(df["maturity_date"])
    for col in ["last", "close_price", "legal_close_price", "accrued_interest", "face_value"]:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df["open_price"] = df["last"].combine_first(df["close_price"]).combine_first(df["legal_close_price"])

    mask = (
        (df["face_unit"] == BASE_CURRENCY)
        & df["is_traded"].astype(bool)
        & df["maturity_date"].notna()
        & (df["maturity_date"] > today_ts)
        & df["open_price"].notna()
        & df["accrued_interest"].notna()
        & df["face_value"].notna()
        & (df["currency"] == BASE_CURRENCY)
    )
    df = df[mask].copy()
    if df.empty:
        return pd.DataFrame(columns=REPORT_COLUMNS)

    # 将来キャッシュフローの種類別合計
    totals = _cash_flow_totals(cash_flows, today_ts)
    df = df.merge(totals, left_on="bond_id", right_index=True, how="left")
    for col in ["coupon_payments", "amortization_payments", "maturity_payments"]:
        df[col] = df[col].fillna(0.0)

    price = df["open_price"]
    face = df["face_value"]
    coupons = df["coupon_payments"]
    amortizations = df["amortization_payments"]

    df["days_till_maturity"] = (df["maturity_date"] - today_ts).dt.days
    df["open_accrued_interest"] = df["accrued_interest"]
    df["open_face_value"] = face

    open_value = price * face / 100 + df["accrued_interest"]
    open_fee = round2(open_value * FEE_RATE)
    revenue = coupons + amortizations + df["maturity_payments"]

    # 額面割れの銘柄のみ、額面との差額も課税対象に含める
    taxes = np.where(
        price < 100,
        round2((coupons + amortizations + face * (1 - price / 100)) * TAX_RATE),
        round2((coupons + amortizations) * TAX_RATE),
    )
    profit_loss = revenue - open_value - open_fee - taxes
    relative = 100.0 * profit_loss / open_value
    rate = relative / (df["days_till_maturity"] / DAYS_PER_YEAR)

    df["open_value"] = round2(open_value)
    df["open_fee"] = open_fee
    df["coupon_payments"] = round2(coupons)
    df["amortization_payments"] = round2(amortizations)
    df["maturity_payments"] = round2(df["maturity_payments"])
    df["taxes"] = taxes
    df["revenue"] = round2(revenue)
    df["profit_loss"] = round2(profit_loss)
    df["relative_profit_loss"] = round2(relative)
    df["interest_rate"] = round2(rate)

    result = df[REPORT_COLUMNS].sort_values("bond_id").reset_index(drop=True)
    logger.info(f"レポート計算: {len(result)} 銘柄 (対象外 {len(mask) - len(result)})")
    return result


def _cash_flow_totals(cash_flows: pd.DataFrame, today_ts: pd.Timestamp) -> pd.DataFrame:
    """bond_id ごとのクーポン・償還・満期償還の合計"""
    columns = {
        PaymentType.COUPON.value: "coupon_payments",
        PaymentType.AMORTIZATION.value: "amortization_payments",
        PaymentType.MATURITY.value: "maturity_payments",
    }
    empty = pd.DataFrame(columns=list(columns.values()), dtype=float)
    if cash_flows.empty:
        return empty

    cf = cash_flows[pd.to_datetime(cash_flows["date"]) > today_ts]
    if cf.empty:
        return empty
    totals = (
        cf.groupby(["bond_id", "type"])["value_rub"].sum()
        .unstack(fill_value=0.0)
        .reindex(columns=list(columns.keys()), fill_value=0.0)
        .rename(columns=columns)
    )
    return totals.astype(float)


# ============================================================
# ポートフォリオのキャッシュフロー
# ============================================================
def cash_flow_timeline(flows: Iterable[list[CashFlowItem]]) -> pd.DataFrame:
    """
    複数銘柄のキャッシュフローを日付ごとに集計する。

    Returns:
        DataFrame with columns:
            date, coupon, amortization, maturity, total,
            has_coupon, has_amortization, has_maturity
    """
    rows = [
        {"date": item.date, "type": PaymentType(item.type).value, "value_rub": item.value_rub}
        for items in flows
        for item in items
    ]
    columns = [
        "date", "coupon", "amortization", "maturity", "total",
        "has_coupon", "has_amortization", "has_maturity",
    ]
    if not rows:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame(rows)
    pivot = (
        df.pivot_table(index="date", columns="type", values="value_rub", aggfunc="sum", fill_value=0.0)
        .reindex(columns=[PaymentType.COUPON.value, PaymentType.AMORTIZATION.value, PaymentType.MATURITY.value],
                 fill_value=0.0)
    )
    pivot.columns = ["coupon", "amortization", "maturity"]
    pivot = pivot.sort_index().reset_index()

    pivot["total"] = pivot["coupon"] + pivot["amortization"] + pivot["maturity"]
    pivot["has_coupon"] = pivot["coupon"] > 0
    pivot["has_amortization"] = pivot["amortization"] > 0
    pivot["has_maturity"] = pivot["maturity"] > 0
    return pivot[columns]
