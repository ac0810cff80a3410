"""
トランザクショナルストア

SQLAlchemy で債券・発行体・支払・オファー・市場データと派生データ
(キャッシュフロー・レポート・コレクション) を永続化する。

    store = Store()
    with store.begin() as tx:
        bond = tx.bonds.get_by_isin("RU000A0JX0J2")
        ...
    # 正常終了でコミット、例外でロールバック

作成系は一意キー重複で AlreadyExistsError、キー検索はヒットなしで NotFoundError。
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Iterator, Optional

import pandas as pd
from sqlalchemy import create_engine, delete, event, func, or_, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from config import DATABASE_URL
from data.schema import (
    Base, Issuer, Bond, Payment, Offer, MarketData, CashFlow, ReportRow,
    CollectionBond, REPORT_COLUMNS, CASHFLOW_COLUMNS,
)
from errors import AlreadyExistsError, NotFoundError
from models import CashFlowItem, PaymentType, Report, SearchResult

logger = logging.getLogger(__name__)


def _enable_sqlite_savepoints(engine) -> None:
    """pysqlite で SAVEPOINT を使えるようにする (トランザクション開始を SQLAlchemy 側で行う)"""

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _frame(session: Session, stmt) -> pd.DataFrame:
    """SELECT の結果を DataFrame にする (0件でも列は揃える)"""
    result = session.execute(stmt)
    columns = list(result.keys())
    return pd.DataFrame([tuple(row) for row in result.all()], columns=columns)


class _Repository:
    def __init__(self, session: Session):
        self.session = session

    def _insert(self, entity, conflict: str):
        """SAVEPOINT 内で INSERT する。一意制約違反は AlreadyExistsError"""
        try:
            with self.session.begin_nested():
                self.session.add(entity)
        except IntegrityError as e:
            raise AlreadyExistsError(conflict) from e
        return entity


# ============================================================
# 事実テーブル
# ============================================================
class IssuerRepository(_Repository):

    def get_by_moex_id(self, moex_id: int) -> Issuer:
        issuer = self.session.scalar(select(Issuer).where(Issuer.moex_id == moex_id))
        if issuer is None:
            raise NotFoundError(f"発行体が見つかりません: moex_id={moex_id}")
        return issuer

    def create(
        self,
        moex_id: int,
        name: str,
        inn: Optional[str] = None,
        okpo: Optional[str] = None,
    ) -> Issuer:
        exists = self.session.scalar(select(Issuer.id).where(Issuer.moex_id == moex_id))
        if exists is not None:
            raise AlreadyExistsError(f"発行体が既に存在します: moex_id={moex_id}")

        issuer = Issuer(moex_id=moex_id, name=name, inn=inn, okpo=okpo)
        return self._insert(issuer, f"発行体が既に存在します: moex_id={moex_id}")

    def frame(self) -> pd.DataFrame:
        return _frame(self.session, select(*Issuer.__table__.columns))


class BondRepository(_Repository):

    def _get(self, condition, key: str) -> Bond:
        bond = self.session.scalar(select(Bond).where(condition))
        if bond is None:
            raise NotFoundError(f"債券が見つかりません: {key}")
        return bond

    def get_by_id(self, bond_id: int) -> Bond:
        return self._get(Bond.id == bond_id, f"id={bond_id}")

    def get_by_moex_id(self, moex_id: int) -> Bond:
        return self._get(Bond.moex_id == moex_id, f"moex_id={moex_id}")

    def get_by_isin(self, isin: str) -> Bond:
        return self._get(Bond.isin == isin, f"isin={isin}")

    def get_by_security_id(self, security_id: str) -> Bond:
        return self._get(Bond.security_id == security_id, f"secid={security_id}")

    def exists(self, moex_id: int, isin: str, security_id: str) -> bool:
        """ISS ID / ISIN / SECID のいずれかが一致する債券があるか"""
        found = self.session.scalar(
            select(Bond.id).where(
                or_(
                    Bond.moex_id == moex_id,
                    Bond.isin == isin,
                    Bond.security_id == security_id,
                )
            ).limit(1)
        )
        return found is not None

    def create(self, **fields) -> Bond:
        """
        債券を作成する。

        Args:
            fields: Bond の列 (issuer_id, moex_id, security_id, isin, ...)
        """
        key = f"moex_id={fields.get('moex_id')} isin={fields.get('isin')} secid={fields.get('security_id')}"
        if self.exists(fields.get("moex_id"), fields.get("isin"), fields.get("security_id")):
            raise AlreadyExistsError(f"債券が既に存在します: {key}")

        return self._insert(Bond(**fields), f"債券が既に存在します: {key}")

    def count(self) -> int:
        return self.session.scalar(select(func.count(Bond.id))) or 0

    def frame(self) -> pd.DataFrame:
        return _frame(self.session, select(*Bond.__table__.columns))


class PaymentRepository(_Repository):

    def get(self, bond_id: int, payment_date: date, payment_type: PaymentType) -> Payment:
        payment = self.session.scalar(
            select(Payment).where(
                Payment.bond_id == bond_id,
                Payment.date == payment_date,
                Payment.type == PaymentType(payment_type).value,
            )
        )
        if payment is None:
            raise NotFoundError(
                f"支払が見つかりません: bond_id={bond_id} date={payment_date} type={payment_type}"
            )
        return payment

    def create(
        self,
        bond_id: int,
        payment_type: PaymentType,
        payment_date: date,
        value: float = 0.0,
        value_percent: float = 0.0,
        value_rub: float = 0.0,
        record_date: Optional[date] = None,
        start_date: Optional[date] = None,
    ) -> Payment:
        type_code = PaymentType(payment_type).value
        conflict = f"支払が既に存在します: bond_id={bond_id} date={payment_date} type={type_code}"

        exists = self.session.scalar(
            select(Payment.id).where(
                Payment.bond_id == bond_id,
                Payment.date == payment_date,
                Payment.type == type_code,
            )
        )
        if exists is not None:
            raise AlreadyExistsError(conflict)

        payment = Payment(
            bond_id=bond_id,
            type=type_code,
            date=payment_date,
            value=value,
            value_percent=value_percent,
            value_rub=value_rub,
            record_date=record_date,
            start_date=start_date,
        )
        return self._insert(payment, conflict)

    def last(self, payment_type: PaymentType) -> Payment:
        """指定種類の支払のうち日付が最新のもの"""
        payment = self.session.scalar(
            select(Payment)
            .where(Payment.type == PaymentType(payment_type).value)
            .order_by(Payment.date.desc(), Payment.id.desc())
            .limit(1)
        )
        if payment is None:
            raise NotFoundError(f"支払がありません: type={payment_type}")
        return payment

    def count(self) -> int:
        return self.session.scalar(select(func.count(Payment.id))) or 0

    def frame(self) -> pd.DataFrame:
        return _frame(self.session, select(*Payment.__table__.columns))


class OfferRepository(_Repository):

    @staticmethod
    def _null_safe(column, value):
        return column.is_(None) if value is None else column == value

    def create(
        self,
        bond_id: int,
        offer_date: Optional[date] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        **fields,
    ) -> Offer:
        """
        オファーを作成する。一意キーは (bond_id, date, start_date, end_date)。
        日付は NULL 同士も一致とみなす。
        """
        conflict = (
            f"オファーが既に存在します: bond_id={bond_id} "
            f"date={offer_date} start={start_date} end={end_date}"
        )
        exists = self.session.scalar(
            select(Offer.id).where(
                Offer.bond_id == bond_id,
                self._null_safe(Offer.date, offer_date),
                self._null_safe(Offer.start_date, start_date),
                self._null_safe(Offer.end_date, end_date),
            )
        )
        if exists is not None:
            raise AlreadyExistsError(conflict)

        offer = Offer(
            bond_id=bond_id,
            date=offer_date,
            start_date=start_date,
            end_date=end_date,
            **fields,
        )
        return self._insert(offer, conflict)

    def list(self, bond_id: int) -> list[Offer]:
        return list(self.session.scalars(
            select(Offer).where(Offer.bond_id == bond_id).order_by(Offer.date, Offer.id)
        ))

    def count(self) -> int:
        return self.session.scalar(select(func.count(Offer.id))) or 0


class MarketDataRepository(_Repository):

    def get(self, bond_id: int) -> MarketData:
        item = self.session.scalar(select(MarketData).where(MarketData.bond_id == bond_id))
        if item is None:
            raise NotFoundError(f"市場データがありません: bond_id={bond_id}")
        return item

    def put(self, bond_id: int, time: datetime, **fields) -> MarketData:
        """市場データを上書きする (なければ作成)。1銘柄1行"""
        item = self.session.scalar(select(MarketData).where(MarketData.bond_id == bond_id))
        if item is None:
            item = MarketData(bond_id=bond_id, time=time, **fields)
            self.session.add(item)
        else:
            item.time = time
            for name, value in fields.items():
                setattr(item, name, value)
        self.session.flush()
        return item

    def count(self) -> int:
        return self.session.scalar(select(func.count(MarketData.id))) or 0

    def frame(self) -> pd.DataFrame:
        return _frame(self.session, select(*MarketData.__table__.columns))


# ============================================================
# 派生テーブル
# ============================================================
def _records(df: pd.DataFrame, columns: list[str]) -> list[dict]:
    """DataFrame → INSERT 用の dict リスト (NaN/NaT は None)"""
    if df.empty:
        return []
    out = df[columns].astype(object).where(df[columns].notna(), None)
    return out.to_dict(orient="records")


class CashFlowRepository(_Repository):

    def list(self, bond_id: int) -> list[CashFlowItem]:
        rows = self.session.scalars(
            select(CashFlow)
            .where(CashFlow.bond_id == bond_id)
            .order_by(CashFlow.date, CashFlow.type)
        )
        return [CashFlowItem(PaymentType(r.type), r.date, r.value_rub) for r in rows]

    def rebuild(self, df: pd.DataFrame) -> int:
        """キャッシュフローを全件入れ替える"""
        self.session.execute(delete(CashFlow))
        records = _records(df, CASHFLOW_COLUMNS)
        if records:
            self.session.execute(CashFlow.__table__.insert(), records)
        logger.info(f"キャッシュフロー再構築: {len(records)} 行")
        return len(records)


class ReportRepository(_Repository):

    def _select(self):
        return (
            select(ReportRow, Bond, Issuer)
            .join(Bond, Bond.id == ReportRow.bond_id)
            .join(Issuer, Issuer.id == Bond.issuer_id)
        )

    @staticmethod
    def _map(row: ReportRow, bond: Bond, issuer: Issuer) -> Report:
        return Report(
            bond_id=bond.id,
            isin=bond.isin,
            security_id=bond.security_id,
            short_name=bond.short_name,
            full_name=bond.full_name,
            issuer_name=issuer.name,
            bond_type=bond.type,
            high_risk=bond.high_risk,
            maturity_date=bond.maturity_date,
            days_till_maturity=row.days_till_maturity,
            currency=row.currency,
            open_price=row.open_price,
            open_accrued_interest=row.open_accrued_interest,
            open_face_value=row.open_face_value,
            open_fee=row.open_fee,
            open_value=row.open_value,
            coupon_payments=row.coupon_payments,
            amortization_payments=row.amortization_payments,
            maturity_payments=row.maturity_payments,
            taxes=row.taxes,
            revenue=row.revenue,
            profit_loss=row.profit_loss,
            relative_profit_loss=row.relative_profit_loss,
            interest_rate=row.interest_rate,
        )

    def get(self, bond_id: int) -> Report:
        found = self.session.execute(
            self._select().where(ReportRow.bond_id == bond_id)
        ).first()
        if found is None:
            raise NotFoundError(f"レポートがありません: bond_id={bond_id}")
        return self._map(*found)

    def list(self, bond_ids: list[int]) -> list[Report]:
        """指定IDのレポートを bond_ids の順で返す (レポートのない銘柄は除く)"""
        if not bond_ids:
            return []
        found = self.session.execute(
            self._select().where(ReportRow.bond_id.in_(bond_ids))
        ).all()
        by_id = {row.bond_id: self._map(row, bond, issuer) for row, bond, issuer in found}
        return [by_id[i] for i in bond_ids if i in by_id]

    def rebuild(self, df: pd.DataFrame) -> int:
        """レポートを全件入れ替える"""
        self.session.execute(delete(ReportRow))
        records = _records(df, REPORT_COLUMNS)
        if records:
            self.session.execute(ReportRow.__table__.insert(), records)
        logger.info(f"レポート再構築: {len(records)} 行")
        return len(records)

    def frame(self) -> pd.DataFrame:
        """
        レポート + 分類に使う債券・発行体の属性。

        Returns:
            DataFrame (REPORT_COLUMNS + bond_type, is_traded, qualified_only,
            high_risk, face_unit, maturity_date, listing_level, issuer_inn)
        """
        stmt = (
            select(
                *ReportRow.__table__.columns,
                Bond.type.label("bond_type"),
                Bond.is_traded,
                Bond.qualified_only,
                Bond.high_risk,
                Bond.face_unit,
                Bond.maturity_date,
                Bond.listing_level,
                Issuer.inn.label("issuer_inn"),
            )
            .join(Bond, Bond.id == ReportRow.bond_id)
            .join(Issuer, Issuer.id == Bond.issuer_id)
        )
        return _frame(self.session, stmt)


class CollectionBondRepository(_Repository):

    def rebuild(self, collection_id: str, duration: int, bond_ids: list[int]) -> int:
        """(コレクション, 期間) の順位リストを入れ替える"""
        self.session.execute(
            delete(CollectionBond).where(
                CollectionBond.collection_id == collection_id,
                CollectionBond.duration == duration,
            )
        )
        records = [
            {"collection_id": collection_id, "duration": duration, "bond_id": int(b), "rank": i}
            for i, b in enumerate(bond_ids, start=1)
        ]
        if records:
            self.session.execute(CollectionBond.__table__.insert(), records)
        return len(records)

    def list(self, collection_id: str, duration: int, limit: Optional[int] = None) -> list[int]:
        stmt = (
            select(CollectionBond.bond_id)
            .where(
                CollectionBond.collection_id == collection_id,
                CollectionBond.duration == duration,
            )
            .order_by(CollectionBond.rank)
        )
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt))

    def bond_ids(self, collection_id: str) -> set[int]:
        """コレクションに含まれる銘柄 (全期間)"""
        return set(self.session.scalars(
            select(CollectionBond.bond_id)
            .where(CollectionBond.collection_id == collection_id)
            .distinct()
        ))


class SearchRepository(_Repository):

    def search(self, text: str, skip: int = 0, limit: int = 10) -> SearchResult:
        """ISIN・SECID・銘柄名・発行体名の部分一致検索"""
        words = [w for w in text.split() if w]
        stmt = select(Bond).join(Issuer, Issuer.id == Bond.issuer_id)
        for word in words:
            pattern = f"%{word}%"
            stmt = stmt.where(or_(
                Bond.isin.ilike(pattern),
                Bond.security_id.ilike(pattern),
                Bond.short_name.ilike(pattern),
                Bond.full_name.ilike(pattern),
                Issuer.name.ilike(pattern),
            ))

        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        items = list(self.session.scalars(
            stmt.order_by(Bond.short_name, Bond.id).offset(skip).limit(limit)
        ))
        return SearchResult(items=items, total_count=total, skip=skip, limit=limit)


# ============================================================
# トランザクション / ストア
# ============================================================
class Transaction:
    """1回の処理単位。リポジトリはすべて同じセッションを共有する"""

    def __init__(self, session: Session):
        self.session = session
        self.issuers = IssuerRepository(session)
        self.bonds = BondRepository(session)
        self.payments = PaymentRepository(session)
        self.offers = OfferRepository(session)
        self.market_data = MarketDataRepository(session)
        self.cash_flows = CashFlowRepository(session)
        self.reports = ReportRepository(session)
        self.collection_bonds = CollectionBondRepository(session)
        self.search = SearchRepository(session)

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()


class Store:

    def __init__(self, url: str = DATABASE_URL, echo: bool = False):
        parsed = make_url(url)
        is_sqlite = parsed.get_backend_name() == "sqlite"
        if is_sqlite and parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(url, echo=echo, pool_pre_ping=True)
        if is_sqlite:
            _enable_sqlite_savepoints(self.engine)

        Base.metadata.create_all(self.engine)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.debug(f"ストア初期化: {parsed.render_as_string(hide_password=True)}")

    @contextmanager
    def begin(self) -> Iterator[Transaction]:
        """
        トランザクションを開始する。

        ブロックが正常終了すればコミット、例外が出ればロールバックして再送出する。
        """
        session = self._sessions()
        tx = Transaction(session)
        try:
            yield tx
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
