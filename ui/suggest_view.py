"""
ポートフォリオ提案ビュー
"""
from __future__ import annotations

from typing import Optional

import pandas as pd
import plotly.graph_objects as go
import streamlit as st

from data.classifier import Collection
from data.report import cash_flow_timeline
from models import SuggestPart, SuggestRequest, SuggestResult
from ui.bond_view import render_cash_flow_chart


def render_suggest_form(collections: list[Collection], duration: int) -> Optional[SuggestRequest]:
    """
    投資額とコレクション比率の入力フォーム。

    Returns:
        送信されたら SuggestRequest、そうでなければ None
    """
    with st.form("suggest_form"):
        amount = st.number_input(
            "投資額 (RUB)", min_value=0.0, value=100_000.0, step=10_000.0, format="%.2f",
        )
        st.markdown("**コレクション比率** (すべて 0 なら全銘柄から選定)")
        cols = st.columns(len(collections)) if collections else []
        weights = {}
        for col, c in zip(cols, collections):
            with col:
                weights[c.id] = st.number_input(
                    c.name, min_value=0.0, value=0.0, step=1.0, key=f"weight_{c.id}",
                )
        submitted = st.form_submit_button("提案を作成")

    if not submitted:
        return None

    parts = [SuggestPart(cid, w) for cid, w in weights.items() if w > 0]
    return SuggestRequest(amount=amount, max_duration=duration, parts=parts)


def render_allocation_chart(result: SuggestResult) -> None:
    """ポジションの比率の横棒グラフ"""
    positions = sorted(result.positions, key=lambda p: p.weight)
    fig = go.Figure(
        go.Bar(
            x=[p.weight * 100 for p in positions],
            y=[f"{p.report.short_name} ×{p.quantity}" for p in positions],
            orientation="h",
            marker_color="rgba(55, 128, 235, 0.7)",
            hovertemplate="%{y}<br>比率: %{x:.2f}%<extra></extra>",
        )
    )
    fig.update_layout(
        title="配分",
        height=max(300, 28 * len(positions) + 120),
        showlegend=False,
        margin=dict(l=10, r=10, t=50, b=10),
    )
    fig.update_xaxes(title_text="比率 (%)")
    st.plotly_chart(fig, width="stretch")


def render_suggest_result(result: SuggestResult) -> None:
    if not result.positions:
        st.info("条件に合う銘柄がありません。投資額を増やすか期間を変更してください")
        return

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("投資総額", f"{result.amount:,.2f} ₽")
    with col2:
        st.metric("損益", f"{result.profit_loss:,.2f} ₽", f"{result.relative_profit_loss:.2f}%")
    with col3:
        st.metric("年率利回り", f"{result.interest_rate:.2f}%")
    with col4:
        st.metric("期間", f"{result.duration_days:,} 日")

    render_allocation_chart(result)

    st.dataframe(
        pd.DataFrame([
            {
                "ISIN": p.report.isin,
                "銘柄": p.report.short_name,
                "数量": p.quantity,
                "取得価額": p.report.open_value,
                "比率(%)": round(p.weight * 100, 2),
                "償還日": p.report.maturity_date,
                "損益": p.report.profit_loss,
                "利回り(%)": p.report.interest_rate,
            }
            for p in result.positions
        ]),
        width="stretch",
        hide_index=True,
    )

    timeline = cash_flow_timeline(p.report.cash_flow for p in result.positions)
    render_cash_flow_chart(timeline, "ポートフォリオのキャッシュフロー")
