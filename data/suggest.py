"""
ポートフォリオ提案

投資額を (コレクション, 比率) の各パートに配分し、パートごとに
候補銘柄を利回り順に貪欲に購入していく。

    1. 比率を合計 1 に正規化し、比率の小さいパートから順に処理する
    2. パートの予算 = floor(投資額 × 比率) + 前のパートの使い残し
    3. 候補銘柄を順に、数量 = floor(残予算 / 取得価額) だけ購入
    4. 全ポジション確定後に、取得価額ベースでポートフォリオ内比率を計算

候補銘柄:
    コレクション指定なし … 非ハイリスク・償還が N/2〜N 年・利回り > 0 の銘柄から 3σ 外れ値を除外
    コレクション指定あり … コレクション収録銘柄のうち償還が N/2〜N 年・利回り > 0、
                           かつ最高利回りから 1 ポイント以内
    いずれも利回り降順で上位 10 銘柄
"""
from __future__ import annotations

import logging
import math
from dataclasses import replace
from datetime import date
from typing import Optional, Union

import pandas as pd

from config import (
    DURATIONS, DAYS_PER_YEAR, COLLECTION_RATE_WINDOW, SUGGEST_CANDIDATE_LIMIT,
)
from data.classifier import (
    CollectionRegistry, reject_outliers, rank_by_rate, maturity_between, years_after,
)
from data.report import round2
from errors import NotFoundError, ValidationError
from models import Position, Report, SuggestPart, SuggestRequest, SuggestResult

logger = logging.getLogger(__name__)


def parse_duration(value: Union[int, str]) -> int:
    """期間コード ("1y"〜"5y" または 1〜5) を年数にする"""
    if isinstance(value, bool):
        raise ValidationError(f"期間が不正です: {value!r}")
    if isinstance(value, int):
        years = value
    else:
        s = str(value).strip().lower()
        if s.endswith("y"):
            s = s[:-1]
        try:
            years = int(s)
        except ValueError:
            raise ValidationError(f"期間が不正です: {value!r}") from None

    if years not in DURATIONS:
        raise ValidationError(f"期間が不正です: {value!r} (1y〜5y)")
    return years


def validate_request(request: SuggestRequest, registry: CollectionRegistry) -> None:
    if request.amount is None or not request.amount > 0 or not math.isfinite(request.amount):
        raise ValidationError(f"投資額は正の数を指定してください: {request.amount}")

    parse_duration(request.max_duration)

    for part in request.parts:
        if part.weight is None or part.weight < 0 or not math.isfinite(part.weight):
            raise ValidationError(f"比率が不正です: {part.collection_id}={part.weight}")
        if part.collection_id not in registry:
            raise ValidationError(f"コレクションが見つかりません: {part.collection_id}")

    if request.parts and sum(p.weight for p in request.parts) <= 0:
        raise ValidationError("比率の合計が 0 です")


def normalize_parts(parts: list[SuggestPart]) -> list[SuggestPart]:
    """比率を合計 1 に正規化し、比率の昇順 (同率は指定順) に並べる"""
    total = sum(p.weight for p in parts)
    normalized = [replace(p, weight=p.weight / total) for p in parts]
    return sorted(normalized, key=lambda p: p.weight)


# ============================================================
# 候補銘柄
# ============================================================
def _suggest_window(frame: pd.DataFrame, duration: int, today: date) -> pd.Series:
    """償還日が today + duration/2 年 〜 today + duration 年"""
    start = (pd.Timestamp(today) + pd.DateOffset(months=6 * duration)).date()
    return maturity_between(frame, start, years_after(today, duration))


def select_global_candidates(
    frame: pd.DataFrame,
    duration: int,
    today: date,
    limit: int = SUGGEST_CANDIDATE_LIMIT,
) -> list[int]:
    if frame.empty:
        return []

    df = frame[
        ~frame["high_risk"].astype(bool)
        & (frame["interest_rate"] > 0)
        & _suggest_window(frame, duration, today)
    ]
    df = reject_outliers(df)
    return rank_by_rate(df)[:limit]


def select_collection_candidates(
    frame: pd.DataFrame,
    member_ids: set[int],
    duration: int,
    today: date,
    limit: int = SUGGEST_CANDIDATE_LIMIT,
) -> list[int]:
    if frame.empty or not member_ids:
        return []

    df = frame[
        frame["bond_id"].isin(member_ids)
        & (frame["interest_rate"] > 0)
        & _suggest_window(frame, duration, today)
    ]
    if df.empty:
        return []

    best = df["interest_rate"].max()
    df = df[round2(best - df["interest_rate"]) <= COLLECTION_RATE_WINDOW]
    return rank_by_rate(df)[:limit]


# ============================================================
# 配分
# ============================================================
def allocate(candidates: list[Report], amount: float) -> tuple[list[Position], float]:
    """
    候補銘柄を順に購入する。

    Returns:
        (ポジション, 使い残した金額)
    """
    positions: list[Position] = []
    remaining = amount
    for report in candidates:
        if report.open_value <= 0:
            continue

        quantity = int(math.floor(remaining / report.open_value))
        if quantity <= 0:
            continue

        remaining -= report.open_value * quantity
        positions.append(Position(report=report.scaled(quantity), quantity=quantity))
        if remaining <= 0:
            break

    return positions, remaining


def summarize(positions: list[Position]) -> SuggestResult:
    """ポートフォリオ内比率と全体の損益・利回りを計算する"""
    result = SuggestResult(positions=positions)
    if not positions:
        return result

    total = sum(p.report.open_value for p in positions)
    for p in positions:
        p.weight = p.report.open_value / total if total > 0 else 0.0

    result.amount = total
    result.duration_days = max(p.report.days_till_maturity for p in positions)
    result.profit_loss = sum(p.report.profit_loss for p in positions)
    if total > 0:
        result.relative_profit_loss = 100.0 * result.profit_loss / total
    if result.duration_days > 0:
        result.interest_rate = result.relative_profit_loss / (result.duration_days / DAYS_PER_YEAR)
    return result


class SuggestEngine:
    """ストア上のレポート・コレクションを使ってポートフォリオを提案する"""

    def __init__(self, registry: CollectionRegistry, limit: int = SUGGEST_CANDIDATE_LIMIT):
        self.registry = registry
        self.limit = limit

    def suggest(self, tx, request: SuggestRequest, today: Optional[date] = None) -> SuggestResult:
        validate_request(request, self.registry)
        today = today or date.today()
        duration = parse_duration(request.max_duration)
        frame = tx.reports.frame()

        positions: list[Position] = []
        if request.parts:
            unused = 0.0
            for part in normalize_parts(request.parts):
                budget = math.floor(request.amount * part.weight) + unused
                candidates = self._candidates(tx, frame, part.collection_id, duration, today)
                part_positions, unused = allocate(candidates, budget)
                logger.info(
                    f"提案パート {part.collection_id} (比率 {part.weight:.3f}): "
                    f"予算 {budget:,.2f} → {len(part_positions)} 銘柄, 残 {unused:,.2f}"
                )
                positions.extend(part_positions)
        else:
            candidates = self._candidates(tx, frame, None, duration, today)
            positions, unused = allocate(candidates, request.amount)
            logger.info(f"提案: {len(positions)} 銘柄, 残 {unused:,.2f}")

        return summarize(positions)

    def _candidates(
        self,
        tx,
        frame: pd.DataFrame,
        collection_id: Optional[str],
        duration: int,
        today: date,
    ) -> list[Report]:
        if collection_id is None:
            ids = select_global_candidates(frame, duration, today, self.limit)
        else:
            try:
                self.registry.get(collection_id)
            except NotFoundError as e:
                raise ValidationError(str(e)) from e
            members = tx.collection_bonds.bond_ids(collection_id)
            ids = select_collection_candidates(frame, members, duration, today, self.limit)

        reports = tx.reports.list(ids)
        for report in reports:
            report.cash_flow = tx.cash_flows.list(report.bond_id)
        return reports
