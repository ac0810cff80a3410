"""
コレクションビュー - 利回り順の銘柄一覧と利回り棒グラフ
"""
from __future__ import annotations

import pandas as pd
import plotly.graph_objects as go
import streamlit as st

from models import Report


def reports_to_frame(reports: list[Report]) -> pd.DataFrame:
    """表示用の DataFrame に変換"""
    return pd.DataFrame([
        {
            "ISIN": r.isin,
            "銘柄": r.short_name,
            "発行体": r.issuer_name,
            "償還日": r.maturity_date,
            "残存日数": r.days_till_maturity,
            "価格(%)": r.open_price,
            "取得価額": r.open_value,
            "損益": r.profit_loss,
            "損益率(%)": r.relative_profit_loss,
            "年率利回り(%)": r.interest_rate,
        }
        for r in reports
    ])


def render_rate_chart(reports: list[Report], title: str) -> None:
    """年率利回りの横棒グラフ (上位ほど上)"""
    ordered = list(reversed(reports))
    fig = go.Figure(
        go.Bar(
            x=[r.interest_rate for r in ordered],
            y=[f"{r.short_name} ({r.isin})" for r in ordered],
            orientation="h",
            marker_color=[
                "rgba(219, 64, 82, 0.7)" if r.high_risk else "rgba(55, 128, 235, 0.7)"
                for r in ordered
            ],
            customdata=[[r.maturity_date, r.open_price] for r in ordered],
            hovertemplate=(
                "%{y}<br>利回り: %{x:.2f}%<br>償還日: %{customdata[0]}"
                "<br>価格: %{customdata[1]:.2f}%<extra></extra>"
            ),
        )
    )
    fig.update_layout(
        title=title,
        height=max(300, 28 * len(reports) + 120),
        showlegend=False,
        margin=dict(l=10, r=10, t=50, b=10),
    )
    fig.update_xaxes(title_text="年率利回り (%)")
    st.plotly_chart(fig, width="stretch")


def render_collection_view(name: str, duration_label: str, reports: list[Report]) -> None:
    """
    コレクション1つ分を描画する。

    Args:
        name: コレクション名
        duration_label: 期間の表示名
        reports: 利回り順のレポート
    """
    st.header(f"{name} ({duration_label})")
    if not reports:
        st.info("条件に合う銘柄がありません")
        return

    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("銘柄数", len(reports))
    with col2:
        st.metric("最高利回り", f"{reports[0].interest_rate:.2f}%")
    with col3:
        median = pd.Series([r.interest_rate for r in reports]).median()
        st.metric("利回り中央値", f"{median:.2f}%")

    render_rate_chart(reports, f"{name} 年率利回り")

    st.dataframe(
        reports_to_frame(reports),
        width="stretch",
        hide_index=True,
    )
