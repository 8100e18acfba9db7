# tests/test_fda_client.py
import datetime as dt
import re

import pytest
from pytest_httpx import HTTPXMock

from ndc_calculator.errors import DependencyError
from ndc_calculator.data_models import RequestContext
from ndc_calculator.resilience.cache import ResilientCache
from ndc_calculator.resilience.rate_limiter import SlidingWindowRateLimiter
from ndc_calculator.upstream.fda_client import FDAClient, is_active, parse_products, search_term_for

FDA_URL = re.compile(r"https://fda\.test/drug/ndc\.json\?.*")

AMOXICILLIN_PRODUCT = {
    "product_ndc": "0093-3109",
    "brand_name": "Amoxicillin",
    "generic_name": "AMOXICILLIN",
    "dosage_form": "CAPSULE",
    "packaging": [
        {"package_ndc": "0093-3109-53", "description": "30 CAPSULE in 1 BOTTLE (0093-3109-53)"},
        {"package_ndc": "0093-3109-01", "description": "100 CAPSULE in 1 BOTTLE (0093-3109-01)"},
        {
            "package_ndc": "0093-3109-05",
            "description": "500 CAPSULE in 1 BOTTLE (0093-3109-05)",
            "marketing_end_date": "20200131",
        },
    ],
}


@pytest.fixture
def fda_client(app_config, clock):
    cache = ResilientCache(ttl_seconds=app_config.fda.cache_ttl_seconds, max_stale_seconds=48 * 3600, clock=clock)
    limiter = SlidingWindowRateLimiter(limit=100, clock=clock)
    return FDAClient(cache=cache, rate_limiter=limiter, app_config=app_config)


def test_parse_products_expands_packaging_and_defaults_to_active():
    records = parse_products({"results": [AMOXICILLIN_PRODUCT]}, today=dt.date(2026, 1, 1))

    by_ndc = {r.ndc: r for r in records}
    assert set(by_ndc) == {"00093310953", "00093310901", "00093310905"}
    assert by_ndc["00093310953"].pkg_size == 30
    assert by_ndc["00093310953"].active is True
    assert by_ndc["00093310905"].active is False  # маркетинг закончился
    assert by_ndc["00093310901"].dosage_form == "CAPSULE"


def test_parse_products_accepts_flat_records_and_dedupes():
    data = {
        "results": [
            {"package_ndc": "0002-1433-80", "package_description": "1 PEN in 1 CARTON > 3 mL in 1 PEN", "brand_name": "Trulicity"},
            {"package_ndc": "00002143380", "package_size": 4},
        ]
    }
    records = parse_products(data)

    assert len(records) == 1
    assert records[0].ndc == "00002143380"


@pytest.mark.parametrize(
    "product, expected",
    [
        ({}, True),
        ({"active": "TRUE"}, True),
        ({"active": "FALSE"}, False),
        ({"active": False}, False),
        ({"marketing_end_date": "20991231"}, True),
        ({"marketing_end_date": "20190101"}, False),
    ],
)
def test_is_active(product, expected):
    assert is_active(product, today=dt.date(2026, 1, 1)) is expected


def test_search_term_strips_strength_and_form():
    assert search_term_for("amoxicillin 500 mg oral capsule") == "amoxicillin"
    assert search_term_for("Humalog U-100 KwikPen") == "Humalog KwikPen"
    assert search_term_for("500 mg") == "500 mg"


@pytest.mark.asyncio
async def test_search_by_name_returns_package_records(fda_client, httpx_mock: HTTPXMock):
    httpx_mock.add_response(method="GET", url=FDA_URL, json={"results": [AMOXICILLIN_PRODUCT]})

    records = await fda_client.search_by_name("amoxicillin 500 mg capsule")

    assert {r.pkg_size for r in records} == {30, 100, 500}
    request = httpx_mock.get_requests()[0]
    assert 'brand_name:"amoxicillin"' in request.url.params["search"]
    assert request.url.params["limit"] == "100"


@pytest.mark.asyncio
async def test_search_by_name_uses_cache(fda_client, httpx_mock: HTTPXMock):
    httpx_mock.add_response(method="GET", url=FDA_URL, json={"results": [AMOXICILLIN_PRODUCT]})

    first = await fda_client.search_by_name("amoxicillin")
    second = await fda_client.search_by_name("Amoxicillin")

    assert first == second
    assert len(httpx_mock.get_requests()) == 1


@pytest.mark.asyncio
async def test_not_found_is_cached_as_negative_result(fda_client, httpx_mock: HTTPXMock):
    httpx_mock.add_response(method="GET", url=FDA_URL, status_code=404, json={"error": {"code": "NOT_FOUND"}})

    assert await fda_client.search_by_name("nosuchdrug") == ()
    assert await fda_client.search_by_name("nosuchdrug") == ()
    assert len(httpx_mock.get_requests()) == 1


@pytest.mark.asyncio
async def test_lookup_by_ndc_queries_ten_digit_variants(fda_client, httpx_mock: HTTPXMock):
    httpx_mock.add_response(method="GET", url=FDA_URL, json={"results": [AMOXICILLIN_PRODUCT]})

    record = await fda_client.lookup_by_ndc("00093310901")

    assert record is not None
    assert record.ndc == "00093310901"
    assert record.pkg_size == 100
    search = httpx_mock.get_requests()[0].url.params["search"]
    assert 'packaging.package_ndc:"0093-3109-01"' in search
    assert 'packaging.package_ndc:"00093-3109-1"' in search


@pytest.mark.asyncio
async def test_lookup_by_ndc_returns_none_for_other_packages(fda_client, httpx_mock: HTTPXMock):
    httpx_mock.add_response(method="GET", url=FDA_URL, json={"results": [AMOXICILLIN_PRODUCT]})

    assert await fda_client.lookup_by_ndc("0093-3109-99") is None


@pytest.mark.asyncio
async def test_server_errors_retried_once_then_dependency_error(fda_client, httpx_mock: HTTPXMock):
    httpx_mock.add_response(method="GET", url=FDA_URL, status_code=500)
    httpx_mock.add_response(method="GET", url=FDA_URL, status_code=503)

    with pytest.raises(DependencyError) as exc_info:
        await fda_client.search_by_name("amoxicillin")

    assert exc_info.value.retry_after_seconds > 0
    assert len(httpx_mock.get_requests()) == 2


@pytest.mark.asyncio
async def test_retry_succeeds_after_one_server_error(fda_client, httpx_mock: HTTPXMock):
    httpx_mock.add_response(method="GET", url=FDA_URL, status_code=500)
    httpx_mock.add_response(method="GET", url=FDA_URL, json={"results": [AMOXICILLIN_PRODUCT]})

    records = await fda_client.search_by_name("amoxicillin")

    assert len(records) == 3


@pytest.mark.asyncio
async def test_stale_entry_served_when_upstream_down(fda_client, clock, httpx_mock: HTTPXMock):
    httpx_mock.add_response(method="GET", url=FDA_URL, json={"results": [AMOXICILLIN_PRODUCT]})
    await fda_client.search_by_name("amoxicillin")

    clock.advance(25 * 3600)  # TTL 24 часа истёк
    httpx_mock.add_response(method="GET", url=FDA_URL, status_code=500)
    httpx_mock.add_response(method="GET", url=FDA_URL, status_code=500)
    ctx = RequestContext()

    records = await fda_client.search_by_name("amoxicillin", ctx)

    assert len(records) == 3
    assert ctx.notes == ["FDA unavailable - using cached data (1500 min old)"]


@pytest.mark.asyncio
async def test_malformed_payload_is_dependency_error(fda_client, httpx_mock: HTTPXMock):
    httpx_mock.add_response(method="GET", url=FDA_URL, text="<html>oops</html>")

    with pytest.raises(DependencyError):
        await fda_client.search_by_name("amoxicillin")
