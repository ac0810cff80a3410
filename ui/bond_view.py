"""
銘柄レポートビュー

指標・収益内訳と、将来のキャッシュフローの積み上げ棒グラフを表示する。
"""
from __future__ import annotations

import pandas as pd
import plotly.graph_objects as go
import streamlit as st

from data.report import cash_flow_timeline
from models import Report, SearchResult

# 支払種類ごとの色
FLOW_COLORS = {
    "coupon": "rgba(55, 128, 235, 0.7)",
    "amortization": "rgba(255, 165, 0, 0.7)",
    "maturity": "rgba(50, 171, 96, 0.7)",
}
FLOW_LABELS = {
    "coupon": "クーポン",
    "amortization": "償還",
    "maturity": "満期償還",
}


def _format_rub(value: float) -> str:
    if pd.isna(value):
        return "---"
    return f"{value:,.2f} ₽"


def render_cash_flow_chart(timeline: pd.DataFrame, title: str = "キャッシュフロー") -> None:
    """cash_flow_timeline() の結果を支払種類別の積み上げ棒グラフで表示"""
    if timeline.empty:
        st.info("将来のキャッシュフローがありません")
        return

    fig = go.Figure()
    for col, label in FLOW_LABELS.items():
        if not timeline[f"has_{col}"].any():
            continue
        fig.add_trace(
            go.Bar(
                x=timeline["date"],
                y=timeline[col],
                name=label,
                marker_color=FLOW_COLORS[col],
                hovertemplate=f"{label}<br>%{{x}}<br>%{{customdata}}<extra></extra>",
                customdata=[_format_rub(v) for v in timeline[col]],
            )
        )

    fig.update_layout(
        title=title,
        height=400,
        barmode="stack",
        showlegend=True,
        legend=dict(orientation="h", yanchor="bottom", y=1.02, xanchor="right", x=1),
        hovermode="x unified",
    )
    fig.update_yaxes(title_text="金額 (RUB)")
    st.plotly_chart(fig, width="stretch")


def render_bond_view(report: Report) -> None:
    """銘柄レポート (1口あたり) を描画する"""
    st.header(f"{report.short_name}  {report.isin} / {report.security_id}")
    st.caption(f"{report.full_name} ・ {report.issuer_name}")
    if report.high_risk:
        st.warning("ハイリスク銘柄です")

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("年率利回り", f"{report.interest_rate:.2f}%")
    with col2:
        st.metric("損益", _format_rub(report.profit_loss), f"{report.relative_profit_loss:.2f}%")
    with col3:
        st.metric("償還日", str(report.maturity_date))
    with col4:
        st.metric("残存日数", f"{report.days_till_maturity:,}")

    # 収益内訳
    breakdown = pd.DataFrame([
        ("価格 (%)", f"{report.open_price:.2f}"),
        ("額面", _format_rub(report.open_face_value)),
        ("経過利息", _format_rub(report.open_accrued_interest)),
        ("手数料", _format_rub(report.open_fee)),
        ("取得価額", _format_rub(report.open_value)),
        ("クーポン", _format_rub(report.coupon_payments)),
        ("償還", _format_rub(report.amortization_payments)),
        ("満期償還", _format_rub(report.maturity_payments)),
        ("税", _format_rub(report.taxes)),
        ("受取総額", _format_rub(report.revenue)),
        ("損益", _format_rub(report.profit_loss)),
    ], columns=["項目", "値"])
    st.dataframe(breakdown, width="stretch", hide_index=True)

    render_cash_flow_chart(cash_flow_timeline([report.cash_flow]))


def render_search_results(result: SearchResult) -> None:
    """検索結果の一覧"""
    if result.total_count == 0:
        st.warning("一致する銘柄が見つかりません")
        return

    st.caption(
        f"{result.total_count} 件中 {result.skip + 1}〜{result.skip + len(result.items)} 件"
    )
    st.dataframe(
        pd.DataFrame([
            {
                "ID": b.id,
                "ISIN": b.isin,
                "SECID": b.security_id,
                "銘柄": b.short_name,
                "名称": b.full_name,
                "償還日": b.maturity_date,
            }
            for b in result.items
        ]),
        width="stretch",
        hide_index=True,
    )
