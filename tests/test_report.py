from datetime import date, timedelta

import numpy as np
import pandas as pd
import pytest

from data.report import round2, build_cash_flows, compute_reports, cash_flow_timeline
from models import CashFlowItem, PaymentType

from conftest import TODAY


def bonds_frame(*rows):
    defaults = {"issuer_id": 1, "face_unit": "RUB", "is_traded": True,
                "maturity_date": TODAY + timedelta(days=365)}
    return pd.DataFrame([{**defaults, **r} for r in rows])


def market_frame(*rows):
    defaults = {"last": None, "close_price": None, "legal_close_price": None,
                "accrued_interest": 0.0, "face_value": 1000.0, "currency": "RUB"}
    return pd.DataFrame([{**defaults, **r} for r in rows])


def flows_frame(*rows):
    return pd.DataFrame(rows, columns=["bond_id", "date", "type", "value_rub"])


ISSUERS = pd.DataFrame([{"id": 1}])
MATURITY = TODAY + timedelta(days=365)


def test_round2_half_away_from_zero():
    assert list(round2([0.125, -0.125, 0.375, 1.0, 0.0])) == pytest.approx([0.13, -0.13, 0.38, 1.0, 0.0])
    assert float(round2(0.125)) == pytest.approx(0.13)


def test_report_below_par_taxes_discount():
    bonds = bonds_frame({"id": 1})
    market = market_frame({"bond_id": 1, "last": 95.0, "accrued_interest": 10.0})
    flows = flows_frame(
        (1, TODAY + timedelta(days=180), "C", 50.0),
        (1, MATURITY, "C", 50.0),
        (1, MATURITY, "M", 1000.0),
    )
    r = compute_reports(bonds, ISSUERS, market, flows, TODAY).iloc[0]

    assert r["open_price"] == 95.0
    assert r["open_value"] == pytest.approx(960.0)
    assert r["open_fee"] == pytest.approx(0.48)
    assert r["coupon_payments"] == pytest.approx(100.0)
    assert r["maturity_payments"] == pytest.approx(1000.0)
    # (クーポン 100 + 額面割引 50) × 13%
    assert r["taxes"] == pytest.approx(19.5)
    assert r["revenue"] == pytest.approx(1100.0)
    assert r["profit_loss"] == pytest.approx(120.02)
    assert r["relative_profit_loss"] == pytest.approx(12.5)
    assert r["days_till_maturity"] == 365
    assert r["interest_rate"] == pytest.approx(12.5020833 / (365 / 356.25), abs=0.01)


def test_report_above_par_taxes_income_only():
    bonds = bonds_frame({"id": 1})
    market = market_frame({"bond_id": 1, "last": 102.0})
    flows = flows_frame((1, MATURITY, "C", 100.0), (1, MATURITY, "M", 1000.0))
    r = compute_reports(bonds, ISSUERS, market, flows, TODAY).iloc[0]

    assert r["open_value"] == pytest.approx(1020.0)
    assert r["open_fee"] == pytest.approx(0.51)
    assert r["taxes"] == pytest.approx(13.0)
    assert r["profit_loss"] == pytest.approx(66.49)


def test_report_price_fallback():
    bonds = bonds_frame({"id": 1}, {"id": 2})
    market = market_frame(
        {"bond_id": 1, "close_price": 99.0, "legal_close_price": 98.0},
        {"bond_id": 2, "legal_close_price": 97.0},
    )
    reports = compute_reports(bonds, ISSUERS, market, flows_frame(), TODAY).set_index("bond_id")
    assert reports.loc[1, "open_price"] == 99.0
    assert reports.loc[2, "open_price"] == 97.0


def test_report_exclusions():
    bonds = bonds_frame(
        {"id": 1},
        {"id": 2, "face_unit": "USD"},
        {"id": 3, "is_traded": False},
        {"id": 4, "maturity_date": TODAY},
        {"id": 5, "maturity_date": None},
        {"id": 6},
        {"id": 7},
        {"id": 8},
        {"id": 9, "issuer_id": 99},
    )
    market = market_frame(
        {"bond_id": 1, "last": 100.0},
        {"bond_id": 2, "last": 100.0},
        {"bond_id": 3, "last": 100.0},
        {"bond_id": 4, "last": 100.0},
        {"bond_id": 5, "last": 100.0},
        {"bond_id": 6},                                   # 価格なし
        {"bond_id": 7, "last": 100.0, "currency": "USD"},
        {"bond_id": 8, "last": 100.0, "accrued_interest": None},
        {"bond_id": 9, "last": 100.0},                    # 発行体なし
    )
    reports = compute_reports(bonds, ISSUERS, market, flows_frame(), TODAY)
    assert list(reports["bond_id"]) == [1]


def test_report_without_cash_flows_is_loss():
    bonds = bonds_frame({"id": 1})
    market = market_frame({"bond_id": 1, "last": 100.0})
    r = compute_reports(bonds, ISSUERS, market, flows_frame(), TODAY).iloc[0]
    assert r["revenue"] == 0.0
    assert r["profit_loss"] == pytest.approx(-1000.5)
    assert r["interest_rate"] < 0


def test_report_ignores_past_cash_flows():
    bonds = bonds_frame({"id": 1})
    market = market_frame({"bond_id": 1, "last": 100.0})
    flows = flows_frame((1, TODAY, "C", 50.0), (1, MATURITY, "M", 1000.0))
    r = compute_reports(bonds, ISSUERS, market, flows, TODAY).iloc[0]
    assert r["coupon_payments"] == 0.0
    assert r["maturity_payments"] == 1000.0


def test_compute_reports_empty_inputs():
    empty = compute_reports(pd.DataFrame(), ISSUERS, pd.DataFrame(), flows_frame(), TODAY)
    assert empty.empty
    assert "interest_rate" in empty.columns


def test_build_cash_flows_filters():
    bonds = pd.DataFrame([
        {"id": 1, "face_unit": "RUB", "is_traded": True},
        {"id": 2, "face_unit": "USD", "is_traded": True},
        {"id": 3, "face_unit": "RUB", "is_traded": False},
    ])
    payments = pd.DataFrame([
        {"bond_id": 1, "date": date(2024, 6, 1), "type": "M", "value": 1000.0, "value_rub": 1000.0},
        {"bond_id": 1, "date": date(2024, 6, 1), "type": "C", "value": 40.0, "value_rub": 40.0},
        {"bond_id": 1, "date": date(2024, 3, 1), "type": "C", "value": 40.0, "value_rub": 40.0},
        {"bond_id": 1, "date": TODAY, "type": "C", "value": 40.0, "value_rub": 40.0},
        {"bond_id": 1, "date": date(2024, 9, 1), "type": "C", "value": 0.0, "value_rub": 0.0},
        {"bond_id": 2, "date": date(2024, 6, 1), "type": "C", "value": 5.0, "value_rub": 450.0},
        {"bond_id": 3, "date": date(2024, 6, 1), "type": "C", "value": 40.0, "value_rub": 40.0},
    ])
    flows = build_cash_flows(payments, bonds, TODAY)

    assert list(flows.columns) == ["bond_id", "date", "type", "value_rub"]
    assert [(r.date, r.type) for r in flows.itertuples()] == [
        (date(2024, 3, 1), "C"),
        (date(2024, 6, 1), "C"),
        (date(2024, 6, 1), "M"),
    ]
    assert set(flows["bond_id"]) == {1}


def test_cash_flow_timeline_aggregates_by_date():
    flows = [
        [CashFlowItem(PaymentType.COUPON, date(2024, 6, 1), 40.0),
         CashFlowItem(PaymentType.MATURITY, date(2025, 1, 1), 1000.0)],
        [CashFlowItem(PaymentType.COUPON, date(2024, 6, 1), 30.0),
         CashFlowItem(PaymentType.AMORTIZATION, date(2024, 9, 1), 500.0)],
    ]
    timeline = cash_flow_timeline(flows)

    assert list(timeline["date"]) == [date(2024, 6, 1), date(2024, 9, 1), date(2025, 1, 1)]
    assert list(timeline["coupon"]) == [70.0, 0.0, 0.0]
    assert list(timeline["total"]) == [70.0, 500.0, 1000.0]
    assert list(timeline["has_amortization"]) == [False, True, False]
    assert list(timeline["has_maturity"]) == [False, False, True]


def test_cash_flow_timeline_empty():
    timeline = cash_flow_timeline([[], []])
    assert timeline.empty
    assert "total" in timeline.columns


def test_report_rate_uses_356_25_day_year():
    bonds = bonds_frame({"id": 1, "maturity_date": TODAY + timedelta(days=712)})
    market = market_frame({"bond_id": 1, "last": 100.0})
    flows = flows_frame((1, TODAY + timedelta(days=712), "M", 1200.0))
    r = compute_reports(bonds, ISSUERS, market, flows, TODAY).iloc[0]
    expected = 100.0 * (1200.0 - 1000.0 - 0.5 - 0.0) / 1000.0 / (712 / 356.25)
    assert r["interest_rate"] == pytest.approx(np.floor(expected * 100 + 0.5) / 100)
