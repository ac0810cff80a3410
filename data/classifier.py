"""
債券コレクションの分類

コレクション = ID + 表示名 + 債券の抽出条件。
収録銘柄は期間バケット (1〜5年) ごとに利回り順で並べ、取得処理のたびに再構築する。

抽出後、年率利回りの 平均 + 3σ (母標準偏差) を超える銘柄はデータ異常とみなして除外する。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Iterable

import pandas as pd

from config import (
    BASE_CURRENCY, DURATIONS, OUTLIER_SIGMA, COLLECTION_MIN_DAYS,
)
from errors import NotFoundError
from models import BondType

logger = logging.getLogger(__name__)

# レポート DataFrame (ReportRepository.frame) → 条件に合う行の bool Series
Predicate = Callable[[pd.DataFrame], pd.Series]


@dataclass(frozen=True)
class Collection:
    id: str
    name: str
    predicate: Predicate


class CollectionRegistry:
    """コレクションの一覧 (起動時に構築して各処理へ渡す)"""

    def __init__(self, collections: Iterable[Collection] = ()):
        self._items: dict[str, Collection] = {}
        for c in collections:
            self.register(c)

    def register(self, collection: Collection) -> None:
        if collection.id in self._items:
            raise ValueError(f"コレクション \"{collection.id}\" は登録済みです")
        self._items[collection.id] = collection

    def get(self, collection_id: str) -> Collection:
        try:
            return self._items[collection_id]
        except KeyError:
            raise NotFoundError(f"コレクションが見つかりません: {collection_id}") from None

    def list(self) -> list[Collection]:
        """ID 順"""
        return [self._items[k] for k in sorted(self._items)]

    def __contains__(self, collection_id: str) -> bool:
        return collection_id in self._items

    def __len__(self) -> int:
        return len(self._items)


# ============================================================
# 既定のコレクション
# ============================================================
def _base(df: pd.DataFrame) -> pd.Series:
    """取引中・償還日あり・一般投資家向け・ルーブル建て"""
    return (
        df["is_traded"].astype(bool)
        & df["maturity_date"].notna()
        & ~df["qualified_only"].astype(bool)
        & (df["face_unit"] == BASE_CURRENCY)
    )


def is_corporate(df: pd.DataFrame) -> pd.Series:
    return (
        _base(df)
        & (df["bond_type"] == BondType.CORPORATE.value)
        & ~df["high_risk"].astype(bool)
    )


def is_high_risk(df: pd.DataFrame) -> pd.Series:
    return _base(df) & df["high_risk"].astype(bool)


def is_ofz(df: pd.DataFrame) -> pd.Series:
    # 発行体 = ロシア財務省 (INN が 77 で始まる)
    inn = df["issuer_inn"].fillna("").astype(str)
    return (
        _base(df)
        & (df["bond_type"] == BondType.OFZ.value)
        & ~df["high_risk"].astype(bool)
        & (df["listing_level"] == 1)
        & inn.str.startswith("77")
    )


DEFAULT_COLLECTIONS = [
    ("corporate", "社債", is_corporate),
    ("highrisk", "ハイリスク債", is_high_risk),
    ("ofz", "OFZ (ロシア国債)", is_ofz),
]


def default_registry() -> CollectionRegistry:
    return CollectionRegistry(
        Collection(id=cid, name=name, predicate=pred)
        for cid, name, pred in DEFAULT_COLLECTIONS
    )


# ============================================================
# 抽出・順位付け
# ============================================================
def reject_outliers(
    df: pd.DataFrame,
    column: str = "interest_rate",
    sigma: float = OUTLIER_SIGMA,
) -> pd.DataFrame:
    """値が 平均 + sigma × 母標準偏差 を超える行を除外する"""
    if df.empty:
        return df

    values = df[column].astype(float)
    limit = values.mean() + sigma * values.std(ddof=0)
    return df[values <= limit]


def years_after(d: date, years: int) -> date:
    """d の years 年後 (2/29 は 2/28 に丸める)"""
    return (pd.Timestamp(d) + pd.DateOffset(years=years)).date()


def maturity_between(df: pd.DataFrame, start: date, end: date) -> pd.Series:
    maturity = pd.to_datetime(df["maturity_date"])
    return (maturity >= pd.Timestamp(start)) & (maturity <= pd.Timestamp(end))


def rank_by_rate(df: pd.DataFrame) -> list[int]:
    """年率利回りの降順 (同率は bond_id 昇順)"""
    ordered = df.sort_values(["interest_rate", "bond_id"], ascending=[False, True])
    return [int(b) for b in ordered["bond_id"]]


def select_members(
    frame: pd.DataFrame,
    collection: Collection,
    duration: int,
    today: date,
) -> list[int]:
    """
    コレクション・期間の収録銘柄を利回り順で返す。

    1. 抽出条件 + 年率利回り > 0
    2. 3σ 外れ値除外 (期間で絞り込む前の全体で判定)
    3. 償還日が today + 3日 〜 today + duration 年
    """
    if frame.empty:
        return []

    matched = frame[collection.predicate(frame) & (frame["interest_rate"] > 0)]
    matched = reject_outliers(matched)

    window = maturity_between(
        matched,
        today + timedelta(days=COLLECTION_MIN_DAYS),
        years_after(today, duration),
    )
    return rank_by_rate(matched[window])


def rebuild_collections(tx, registry: CollectionRegistry, today: date) -> dict[str, int]:
    """
    全コレクション・全期間の収録銘柄を再構築する。

    Returns:
        dict: {collection_id: 収録件数 (全期間合計)}
    """
    frame = tx.reports.frame()
    counts: dict[str, int] = {}
    for collection in registry.list():
        total = 0
        for duration in DURATIONS:
            members = select_members(frame, collection, duration, today)
            total += tx.collection_bonds.rebuild(collection.id, duration, members)
        counts[collection.id] = total
        logger.info(f"コレクション再構築: {collection.id} ({total} 件)")
    return counts
