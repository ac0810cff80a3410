import threading
import time

import pytest
from filelock import FileLock

from data.service import BondRecommender
from data.storage import Store
from errors import FetchCancelledError, MissingRequiredPropertyError, NotFoundError, ValidationError
from models import PaymentType, SuggestPart, SuggestRequest

from conftest import TODAY, CORP_MATURITY, DESCRIPTION_PREFIX, description_rows, extended


@pytest.fixture
def service(store, client, tmp_path):
    return BondRecommender(store, client=client, lock_path=tmp_path / "fetch.lock")


@pytest.fixture
def loaded(service, iss_data):
    service.fetch_static_data(today=TODAY)
    service.fetch_market_data(today=TODAY)
    return service


def test_fetch_static_then_market(service, iss_data):
    assert not service.is_static_data_up_to_date()

    static = service.fetch_static_data(today=TODAY)
    assert static.bonds.new_bonds == 3
    assert static.payments.new_coupons == 8
    assert static.offers.new_offers == 2
    # 市場データがまだないのでレポートは0件
    assert static.reports == 0
    assert service.is_static_data_up_to_date()

    market = service.fetch_market_data(today=TODAY)
    assert market.market_data.updated == 3
    assert market.reports == 3

    summary = service.data_summary()
    assert summary == {"bonds": 3, "payments": 11, "offers": 2, "market_data": 3}


def test_report_values(loaded):
    report = loaded.get_report("RU000A100001")

    assert report.open_price == 98.5
    assert report.open_value == pytest.approx(995.0)
    assert report.open_fee == pytest.approx(0.5)
    assert report.coupon_payments == pytest.approx(120.0)
    assert report.maturity_payments == pytest.approx(1000.0)
    assert report.taxes == pytest.approx(17.55)
    assert report.profit_loss == pytest.approx(106.95)
    assert report.currency == "RUB"
    assert report.issuer_name == "ПАО Ромашка"

    # 過去のクーポンは含まない。同日は C → M の順
    assert [(c.date, c.type) for c in report.cash_flow][-2:] == [
        (CORP_MATURITY, PaymentType.COUPON),
        (CORP_MATURITY, PaymentType.MATURITY),
    ]
    assert len(report.cash_flow) == 4


def test_get_report_by_any_key(loaded):
    by_isin = loaded.get_report("RU000A100002")
    assert loaded.get_report("SU26200RMFS1").bond_id == by_isin.bond_id
    assert loaded.get_report(by_isin.bond_id).isin == "RU000A100002"
    assert loaded.get_report(str(by_isin.bond_id)).isin == "RU000A100002"
    # 終値で評価
    assert by_isin.open_price == 97.0

    with pytest.raises(NotFoundError):
        loaded.get_report("RU000NOPE")


def test_collections(loaded):
    assert [c.id for c in loaded.list_collections()] == ["corporate", "highrisk", "ofz"]

    def isins(collection_id, duration):
        return [r.isin for r in loaded.list_collection_bonds(collection_id, duration)]

    assert isins("corporate", 1) == []
    assert isins("corporate", "2y") == ["RU000A100001"]
    assert isins("ofz", 1) == ["RU000A100002"]
    assert isins("highrisk", "1y") == ["RU000A100003"]
    assert isins("highrisk", 5) == ["RU000A100003"]

    overview = loaded.collection_overview()
    assert set(overview) == {"corporate", "highrisk", "ofz"}
    assert [r.isin for r in overview["corporate"][3]] == ["RU000A100001"]

    with pytest.raises(NotFoundError):
        loaded.list_collection_bonds("nope", 1)
    with pytest.raises(ValidationError):
        loaded.list_collection_bonds("ofz", "9y")


def test_suggest(loaded):
    result = loaded.suggest(
        SuggestRequest(amount=10_000, max_duration=1, parts=[SuggestPart("ofz", 1)]),
        today=TODAY,
    )
    assert [p.report.isin for p in result.positions] == ["RU000A100002"]
    assert result.positions[0].quantity == 10
    assert result.amount <= 10_000


def test_search(loaded):
    result = loaded.search("Минфин")
    assert [b.isin for b in result.items] == ["RU000A100002"]
    assert loaded.search("RU000A1").total_count == 3


def test_static_refetch_is_idempotent(loaded):
    again = loaded.fetch_static_data(today=TODAY)
    assert again.bonds.new_bonds == 0
    assert again.payments.new_coupons == 0
    assert again.offers.new_offers == 0
    # 派生データは作り直される
    assert again.reports == 3


def test_failed_fetch_rolls_back(service, iss_data):
    iss_data.descriptions["RU000A3"] = description_rows(CORP_MATURITY, omit=("FACEUNIT",))
    with pytest.raises(MissingRequiredPropertyError):
        service.fetch_static_data(today=TODAY)

    assert not service.is_static_data_up_to_date()
    # ロックは解放されている
    assert service.fetch_market_data(today=TODAY) is not None


def test_cancelled_fetch_rolls_back(service, iss_data):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(FetchCancelledError):
        service.fetch_static_data(cancel, today=TODAY)
    assert service.data_summary()["bonds"] == 0


def test_market_fetch_skips_while_locked(service, iss_data, monkeypatch):
    monkeypatch.setattr("data.service.MARKET_DATA_LOCK_TIMEOUT", 0.05)
    # 別プロセスがロックファイルを保持している状態
    other = FileLock(str(service.lock_path))
    other.acquire()
    try:
        assert service.fetch_market_data(today=TODAY) is None
    finally:
        other.release()

    assert iss_data.calls == []
    assert service.fetch_market_data(today=TODAY) is not None


def test_market_fetch_skips_while_another_instance_fetches_static(tmp_path, client, iss_data, monkeypatch):
    monkeypatch.setattr("data.service.MARKET_DATA_LOCK_TIMEOUT", 0.05)
    url = f"sqlite:///{tmp_path / 'bonds.db'}"
    lock_path = tmp_path / "fetch.lock"
    static_store, market_store = Store(url), Store(url)
    static = BondRecommender(static_store, client=client, lock_path=lock_path)
    market = BondRecommender(market_store, client=client, lock_path=lock_path)

    # 3銘柄目の証券説明の取得中 (トランザクションの途中) で静的データ取得を止める
    entered, resume = threading.Event(), threading.Event()

    def held_description(params):
        entered.set()
        resume.wait(10)
        return extended(description=iss_data.descriptions["RU000A3"])

    iss_data.routes[f"{DESCRIPTION_PREFIX}RU000A3.json"] = held_description

    outcome = {}

    def run_static():
        try:
            outcome["static"] = static.fetch_static_data(today=TODAY)
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(target=run_static)
    worker.start()
    try:
        assert entered.wait(10)
        started = time.monotonic()
        assert market.fetch_market_data(today=TODAY) is None
        assert time.monotonic() - started < 5
    finally:
        resume.set()
        worker.join(10)

    assert "error" not in outcome
    assert outcome["static"].bonds.new_bonds == 3

    # 静的データ取得の完了後は実行される
    result = market.fetch_market_data(today=TODAY)
    assert result is not None
    assert result.market_data.updated == 3

    static_store.dispose()
    market_store.dispose()



def test_ensure_data_only_when_empty(service, iss_data):
    service.ensure_data()
    assert service.data_summary()["market_data"] == 3

    iss_data.calls.clear()
    service.ensure_data()
    assert iss_data.calls == []
