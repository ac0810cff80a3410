"""
サイドバー UI
"""
from __future__ import annotations

import streamlit as st

from config import DURATIONS, DURATION_LABELS


def render_sidebar(summary: dict[str, int]) -> dict:
    """
    サイドバーに期間選択とデータ概要を表示し、選択値を返す。

    Args:
        summary: BondRecommender.data_summary() の結果

    Returns:
        dict: {
            "duration": int,          # 1..5 (年)
            "refresh": bool,          # 市場データ更新ボタンが押されたか
        }
    """
    st.sidebar.title("MOEX 債券レコメンド")
    st.sidebar.markdown("---")

    duration = st.sidebar.radio(
        "保有期間",
        options=DURATIONS,
        format_func=lambda d: DURATION_LABELS.get(d, f"{d}年"),
        index=0,
    )

    st.sidebar.markdown("---")
    refresh = st.sidebar.button("市場データを更新", width="stretch")

    # 統計情報
    st.sidebar.markdown("---")
    st.sidebar.markdown("### データ概要")
    st.sidebar.markdown(f"- 債券数: **{summary.get('bonds', 0):,}**")
    st.sidebar.markdown(f"- 支払: **{summary.get('payments', 0):,}**")
    st.sidebar.markdown(f"- オファー: **{summary.get('offers', 0):,}**")
    st.sidebar.markdown(f"- 市場データ: **{summary.get('market_data', 0):,}**")

    return {
        "duration": duration,
        "refresh": refresh,
    }
