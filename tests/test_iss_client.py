from datetime import date

import pytest
import requests

from data.iss_client import ISSClient
from errors import UpstreamError

from conftest import (
    FakeResponse, extended, security_row, coupon_row,
    SECURITIES_PATH, BONDIZATION_PATH, MARKETDATA_PATH,
)


def test_invalid_base_url():
    with pytest.raises(ValueError):
        ISSClient("ftp://iss.moex.com")


def test_common_params_and_headers(client, fake_iss):
    fake_iss.securities = [security_row(1, "A", "RU0001")]
    pages = list(client.list_securities())

    assert len(pages) == 1
    path, params = fake_iss.calls[0]
    assert path == SECURITIES_PATH
    assert params["iss.json"] == "extended"
    assert params["iss.meta"] == "off"
    assert params["engine"] == "stock"
    assert params["market"] == "bonds"
    assert params["is_trading"] == "true"
    assert params["limit"] == 100
    assert "start" not in params
    assert fake_iss.headers["Accept"] == "application/json"


def test_cursor_pages_until_empty(client, fake_iss):
    fake_iss.securities = [security_row(i, f"S{i}", f"RU{i:04d}") for i in range(1, 251)]
    pages = list(client.list_securities())

    assert [len(p) for p in pages] == [100, 100, 50]
    starts = [p.get("start") for _, p in fake_iss.calls]
    assert starts == [None, 100, 200, 250]
    assert pages[2][-1].id == 250


def test_cursor_advances_by_returned_rows(client, fake_iss):
    # サーバーが limit より少ない件数しか返さない場合も取りこぼさない
    rows = [security_row(i, f"S{i}", f"RU{i:04d}") for i in range(1, 8)]

    def short_pages(params):
        start = int(params.get("start", 0))
        return extended(securities=rows[start:start + 3])

    fake_iss.routes[SECURITIES_PATH] = short_pages
    pages = list(client.list_securities(limit=10))

    assert [len(p) for p in pages] == [3, 3, 1]
    assert [p.get("start") for _, p in fake_iss.calls] == [None, 3, 6, 7]


def test_missing_section_stops_cursor(client, fake_iss):
    fake_iss.routes[BONDIZATION_PATH] = lambda params: extended()
    assert list(client.list_coupons()) == []
    assert len(fake_iss.calls) == 1


def test_bondization_params(client, fake_iss):
    fake_iss.coupons = [coupon_row("RU1", date(2024, 5, 1), 10.0)]
    list(client.list_coupons(since=date(2024, 1, 1), till=date(2024, 12, 31)))

    params = fake_iss.calls_to(BONDIZATION_PATH, "coupons")[0]
    assert params["from"] == "2024-01-01"
    assert params["till"] == "2024-12-31"
    assert params["sort_order"] == "asc"
    assert "is_traded" not in params


def test_http_error_propagates(client, fake_iss):
    fake_iss.routes[SECURITIES_PATH] = lambda params: FakeResponse({}, status_code=500)
    with pytest.raises(requests.HTTPError):
        next(client.list_securities())


def test_malformed_payload(client, fake_iss):
    fake_iss.routes[SECURITIES_PATH] = lambda params: {"securities": []}
    with pytest.raises(UpstreamError):
        next(client.list_securities())


def test_market_data_requests_both_sections(client, fake_iss):
    fake_iss.market_securities = [{"SECID": "A", "BOARDID": "TQCB", "ACCRUEDINT": 1.0}]
    fake_iss.market_rows = [{"SECID": "A", "BOARDID": "TQCB", "LAST": 99.0,
                             "SYSTIME": "2024-01-15 12:00:00"}]
    items = client.get_market_data()

    assert len(items) == 1
    params = fake_iss.calls_to(MARKETDATA_PATH)[0]
    assert params["iss.only"] == "securities,marketdata"


def test_security_description_path_is_quoted(client, fake_iss):
    client.get_security_description("A/B C")
    path, params = fake_iss.calls[0]
    assert path == "/iss/securities/A%2FB%20C.json"
    assert params["iss.only"] == "description"
