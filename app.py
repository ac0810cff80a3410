"""
MOEX 債券レコメンド ダッシュボード - Streamlit メインエントリ

Usage:
    streamlit run app.py
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

import streamlit as st

# プロジェクトルートをパスに追加
sys.path.insert(0, str(Path(__file__).parent))

from config import DURATION_LABELS, COLLECTION_LIST_LIMIT, SEARCH_LIMIT, LOG_LEVEL
from data.iss_client import ISSClient
from data.service import BondRecommender
from data.storage import Store
from errors import BondRecommenderError, NotFoundError, ValidationError, UPSTREAM_ERRORS
from ui.sidebar import render_sidebar
from ui.collection_view import render_collection_view
from ui.bond_view import render_bond_view, render_search_results
from ui.suggest_view import render_suggest_form, render_suggest_result

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


# ============================================================
# ページ設定
# ============================================================
st.set_page_config(
    page_title="MOEX 債券レコメンド",
    page_icon="📈",
    layout="wide",
    initial_sidebar_state="expanded",
)


# ============================================================
# サービス・データ読み込み（キャッシュ）
# ============================================================
@st.cache_resource
def get_service() -> BondRecommender:
    """プロセス内で1つだけ作る (取得ロックを共有するため)"""
    return BondRecommender(Store(), client=ISSClient())


@st.cache_data(ttl=300)
def load_summary() -> dict:
    return get_service().data_summary()


@st.cache_data(ttl=300)
def load_collection(collection_id: str, duration: int):
    return get_service().list_collection_bonds(collection_id, duration, limit=COLLECTION_LIST_LIMIT)


@st.cache_data(ttl=300)
def load_report(key: str):
    return get_service().get_report(key)


def main():
    service = get_service()

    if not service.is_static_data_up_to_date():
        st.error(
            "データが見つかりません。\n\n"
            "先に以下のコマンドで ISS からデータを取得してください:\n\n"
            "```\n"
            "python scripts/fetch_data.py\n"
            "```"
        )
        return

    # サイドバー
    filters = render_sidebar(load_summary())
    duration = filters["duration"]
    duration_label = DURATION_LABELS.get(duration, f"{duration}年")

    if filters["refresh"]:
        try:
            with st.spinner("市場データを取得中..."):
                result = service.fetch_market_data()
        except UPSTREAM_ERRORS as e:
            st.error(f"ISS からの取得に失敗しました: {e}")
        else:
            if result is None:
                st.info("別の取得処理が実行中です")
            else:
                st.success(f"市場データを更新しました ({result.market_data.updated} 件)")
                st.cache_data.clear()

    # タブ構成
    tab_collections, tab_bond, tab_suggest, tab_search = st.tabs([
        "📋 コレクション", "🏷️ 銘柄", "💼 ポートフォリオ提案", "🔍 検索",
    ])

    # ========================================
    # タブ1: コレクション
    # ========================================
    with tab_collections:
        collections = service.list_collections()
        names = {c.id: c.name for c in collections}
        selected = st.radio(
            "コレクション",
            options=list(names.keys()),
            format_func=lambda cid: names[cid],
            horizontal=True,
        )
        render_collection_view(names[selected], duration_label, load_collection(selected, duration))

    # ========================================
    # タブ2: 銘柄
    # ========================================
    with tab_bond:
        key = st.text_input(
            "ISIN / SECID / ID",
            placeholder="例: RU000A0JX0J2, SU26238RMFS4",
            key="bond_key",
        )
        if key:
            try:
                render_bond_view(load_report(key.strip()))
            except NotFoundError:
                st.warning(f"「{key}」のレポートが見つかりません")

    # ========================================
    # タブ3: ポートフォリオ提案
    # ========================================
    with tab_suggest:
        st.header(f"ポートフォリオ提案 ({duration_label})")
        request = render_suggest_form(service.list_collections(), duration)
        if request is not None:
            try:
                render_suggest_result(service.suggest(request))
            except ValidationError as e:
                st.error(f"入力が不正です: {e}")
            except BondRecommenderError as e:
                st.error(str(e))

    # ========================================
    # タブ4: 検索
    # ========================================
    with tab_search:
        text = st.text_input(
            "銘柄検索（ISIN・SECID・名称・発行体）",
            placeholder="例: ОФЗ, Газпром",
            key="search_text",
        )
        if text:
            page = st.number_input("ページ", min_value=1, value=1, step=1, key="search_page")
            render_search_results(
                service.search(text, skip=(int(page) - 1) * SEARCH_LIMIT, limit=SEARCH_LIMIT)
            )


if __name__ == "__main__":
    main()
