"""Vendor adapters and mock providers — parsing, status mapping, batching. No network."""
import json
from datetime import date, datetime, timezone

import pytest

from marketfeed.core.data.providers.base import MAX_BATCH_SIZE, chunked
from marketfeed.core.data.providers.errors import ProviderError, ProviderErrorCode
from marketfeed.core.data.providers.exchangerate_api import (
    ExchangeRateAPIProvider,
    check_currencies,
    previous_trading_day,
)
from marketfeed.core.data.providers.fmp import FMPFundamentalsProvider, FMPPriceProvider, parse_fmp_quotes
from marketfeed.core.data.providers.http import VendorClient, fetch_in_chunks, parse_json, raise_for_status
from marketfeed.core.data.providers.mock import MockExchangeRateProvider, MockPriceProvider
from marketfeed.core.data.providers.open_exchange_rates import OpenExchangeRatesProvider, rebase
from marketfeed.core.data.providers.types import BatchResult, PriceResult, decimal_string
from marketfeed.core.data.providers.yahoo import YahooFinancePriceProvider, parse_yahoo_quotes

NOW = datetime(2024, 6, 12, 15, 0, tzinfo=timezone.utc)


class FakeResponse:

    def __init__(self, status: int, body: str):
        self.status = status
        self._body = body

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Answers GETs from a list of (status, body) in order and records the URLs."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def get(self, url, params=None):
        self.requests.append((url, params))
        status, body = self.responses.pop(0)
        return FakeResponse(status, body if isinstance(body, str) else json.dumps(body))


# ── Numeric handling ─────────────────────────────────────────────────────


class TestDecimalStrings:

    def test_json_floats_stay_exact(self):
        payload = parse_json("fmp", '{"price": 178.50, "rate": 5.0123000}')
        assert decimal_string(payload["price"]) == "178.50"
        assert decimal_string(payload["rate"]) == "5.0123000"

    def test_floats_refused(self):
        with pytest.raises(TypeError):
            PriceResult(symbol="AAPL", close=178.5, source="x", fetched_at=NOW, price_date=NOW.date())

    def test_malformed_json_is_invalid_response(self):
        with pytest.raises(ProviderError) as exc_info:
            parse_json("fmp", "<html>oops</html>")
        assert exc_info.value.code == ProviderErrorCode.INVALID_RESPONSE


# ── HTTP plumbing ────────────────────────────────────────────────────────


class TestStatusMapping:

    @pytest.mark.parametrize("status, code", [
        (429, ProviderErrorCode.RATE_LIMITED),
        (401, ProviderErrorCode.INVALID_RESPONSE),
        (403, ProviderErrorCode.INVALID_RESPONSE),
        (404, ProviderErrorCode.PROVIDER_FAILED),
        (500, ProviderErrorCode.PROVIDER_FAILED),
        (503, ProviderErrorCode.PROVIDER_FAILED),
    ])
    def test_non_2xx(self, status, code):
        with pytest.raises(ProviderError) as exc_info:
            raise_for_status("vendorA", status, "body")
        assert exc_info.value.code == code
        assert exc_info.value.details["status"] == status

    def test_2xx_passes(self):
        raise_for_status("vendorA", 200, "")

    @pytest.mark.asyncio
    async def test_vendor_client_joins_url_and_decodes(self):
        session = FakeSession((200, '{"ok": 1.10}'))
        client = VendorClient("vendorA", "https://api.example.com/v3/", session=session)
        payload = await client.get_json("/quote/AAPL", {"apikey": "k"})
        assert session.requests == [("https://api.example.com/v3/quote/AAPL", {"apikey": "k"})]
        assert str(payload["ok"]) == "1.10"


class TestBatching:

    def test_chunked_caps_at_fifty(self):
        items = [f"S{i}" for i in range(120)]
        assert [len(c) for c in chunked(items)] == [50, 50, 20]
        assert [len(c) for c in chunked(items, 500)] == [50, 50, 20]
        assert MAX_BATCH_SIZE == 50

    @pytest.mark.asyncio
    async def test_failed_chunk_becomes_per_key_errors(self):
        async def fetch(chunk):
            if "S60" in chunk:
                raise ProviderError("HTTP error: 500", ProviderErrorCode.PROVIDER_FAILED, "vendorA")
            return BatchResult(results=[
                PriceResult(symbol=s, close="1", source="vendorA", fetched_at=NOW, price_date=NOW.date()) for s in chunk
            ])

        batch = await fetch_in_chunks("vendorA", [f"S{i}" for i in range(120)], fetch)
        assert len(batch.results) == 70
        assert len(batch.errors) == 50
        assert batch.errors["S60"] == "HTTP error: 500"

    @pytest.mark.asyncio
    async def test_rate_limit_aborts_the_loop(self):
        calls = []

        async def fetch(chunk):
            calls.append(chunk)
            raise ProviderError("Rate limit exceeded", ProviderErrorCode.RATE_LIMITED, "vendorA")

        with pytest.raises(ProviderError) as exc_info:
            await fetch_in_chunks("vendorA", [f"S{i}" for i in range(120)], fetch)
        assert exc_info.value.is_rate_limited
        assert len(calls) == 1


# ── Price adapters ───────────────────────────────────────────────────────


class TestFMP:

    def test_parse_quotes_marks_missing_symbols(self):
        payload = parse_json("fmp", (
            '[{"symbol": "AAPL", "price": 178.50, "open": 177.00, "dayHigh": 179.10, '
            '"dayLow": 176.80, "volume": 5, "timestamp": 1718200000}]'
        ))
        batch = parse_fmp_quotes(payload, ["AAPL", "MSFT"], source="fmp", fetched_at=NOW)
        assert batch.results[0].close == "178.50"
        assert batch.results[0].price_date == date(2024, 6, 12)
        assert batch.errors == {"MSFT": "Symbol not found in response"}

    def test_parse_rejects_non_list(self):
        with pytest.raises(ProviderError) as exc_info:
            parse_fmp_quotes({"Error Message": "bad key"}, ["AAPL"], source="fmp", fetched_at=NOW)
        assert exc_info.value.code == ProviderErrorCode.INVALID_RESPONSE

    @pytest.mark.asyncio
    async def test_fetch_prices_over_session(self):
        session = FakeSession((200, '[{"symbol": "AAPL", "price": 178.50}]'))
        provider = FMPPriceProvider("key", session=session, clock=lambda: NOW)
        batch = await provider.fetch_prices(["AAPL"])
        assert batch.results[0].close == "178.50"
        assert session.requests[0][0].endswith("/quote/AAPL")
        assert session.requests[0][1] == {"apikey": "key"}

    @pytest.mark.asyncio
    async def test_fetch_prices_rate_limited(self):
        provider = FMPPriceProvider("key", session=FakeSession((429, "slow down")), clock=lambda: NOW)
        with pytest.raises(ProviderError) as exc_info:
            await provider.fetch_prices(["AAPL"])
        assert exc_info.value.code == ProviderErrorCode.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_fundamentals_tolerates_missing_ratios(self):
        session = FakeSession(
            (200, '[{"symbol": "AAPL", "mktCap": 2900000000000, "sector": "Technology", "industry": "Consumer Electronics"}]'),
            (500, "ratios down"),
        )
        provider = FMPFundamentalsProvider("key", session=session, clock=lambda: NOW)
        batch = await provider.fetch_fundamentals(["AAPL"])
        result = batch.results[0]
        assert result.market_cap == "2900000000000"
        assert result.pe_ratio is None
        assert result.sector == "Technology"

    @pytest.mark.asyncio
    async def test_health_check_without_key(self):
        assert await FMPPriceProvider("").health_check() is False


class TestYahoo:

    def test_parse_quotes(self):
        payload = parse_json("yahoo-finance", (
            '{"quoteResponse": {"error": null, "result": ['
            '{"symbol": "AAPL", "regularMarketPrice": 178.50, "currency": "USD", "regularMarketTime": 1718200000}, '
            '{"symbol": "MSFT"}]}}'
        ))
        batch = parse_yahoo_quotes(payload, ["AAPL", "MSFT", "GOOG"], source="yahoo-finance", fetched_at=NOW)
        assert [p.close for p in batch.results] == ["178.50"]
        assert set(batch.errors) == {"MSFT", "GOOG"}

    def test_parse_api_error(self):
        with pytest.raises(ProviderError) as exc_info:
            parse_yahoo_quotes({"quoteResponse": {"result": [], "error": "bad"}}, ["AAPL"], source="y", fetched_at=NOW)
        assert exc_info.value.code == ProviderErrorCode.PROVIDER_FAILED

    @pytest.mark.asyncio
    async def test_fetch_prices_over_session(self):
        body = '{"quoteResponse": {"result": [{"symbol": "AAPL", "regularMarketPrice": 178.50}], "error": null}}'
        session = FakeSession((200, body))
        provider = YahooFinancePriceProvider(session=session, clock=lambda: NOW)
        batch = await provider.fetch_prices(["AAPL"])
        assert batch.results[0].close == "178.50"
        assert session.requests[0][1] == {"symbols": "AAPL"}


# ── FX adapters ──────────────────────────────────────────────────────────


class TestExchangeRateHelpers:

    @pytest.mark.parametrize("day, expected", [
        (date(2024, 6, 12), date(2024, 6, 11)),   # Wednesday
        (date(2024, 6, 10), date(2024, 6, 7)),    # Monday -> Friday
        (date(2024, 6, 9), date(2024, 6, 7)),     # Sunday -> Friday
        (date(2024, 6, 8), date(2024, 6, 7)),     # Saturday
    ])
    def test_previous_trading_day(self, day, expected):
        assert previous_trading_day(day) == expected

    def test_unsupported_currency(self):
        with pytest.raises(ProviderError) as exc_info:
            check_currencies("exchangerate-api", "USD", ["BRL", "XYZ"])
        assert exc_info.value.code == ProviderErrorCode.INVALID_RESPONSE
        assert exc_info.value.details["unsupported"] == ["XYZ"]

    def test_rebase_through_usd(self):
        usd = parse_json("oxr", '{"USD": 1, "EUR": 0.8, "BRL": 4.0}')
        assert rebase("oxr", usd, "EUR", ["BRL", "EUR"]) == {"BRL": "5", "EUR": "1"}

    def test_rebase_missing_base(self):
        with pytest.raises(ProviderError):
            rebase("oxr", {"USD": 1}, "EUR", ["BRL"])


class TestExchangeRateAdapters:

    @pytest.mark.asyncio
    async def test_exchangerate_api_parses_conversion_rates(self):
        body = '{"result": "success", "base_code": "USD", "conversion_rates": {"BRL": 5.0123, "EUR": 0.9210}}'
        session = FakeSession((200, body))
        provider = ExchangeRateAPIProvider("key", session=session, clock=lambda: NOW)
        result = await provider.fetch_rates("USD", ["BRL", "EUR", "GBP"])
        assert result.rates == {"BRL": "5.0123", "EUR": "0.9210"}
        assert result.rate_date == date(2024, 6, 11)
        assert session.requests[0][0].endswith("/key/latest/USD")

    @pytest.mark.asyncio
    async def test_exchangerate_api_error_payload(self):
        session = FakeSession((200, '{"result": "error", "error-type": "invalid-key"}'))
        provider = ExchangeRateAPIProvider("key", session=session, clock=lambda: NOW)
        with pytest.raises(ProviderError) as exc_info:
            await provider.fetch_rates("USD", ["BRL"])
        assert exc_info.value.code == ProviderErrorCode.INVALID_RESPONSE

    @pytest.mark.asyncio
    async def test_exchangerate_api_without_key(self):
        with pytest.raises(ProviderError) as exc_info:
            await ExchangeRateAPIProvider("").fetch_rates("USD", ["BRL"])
        assert exc_info.value.code == ProviderErrorCode.PROVIDER_FAILED

    @pytest.mark.asyncio
    async def test_open_exchange_rates_requests_non_usd_symbols(self):
        session = FakeSession((200, '{"base": "USD", "rates": {"EUR": 0.8, "BRL": 4.0}}'))
        provider = OpenExchangeRatesProvider("app", session=session, clock=lambda: NOW)
        result = await provider.fetch_rates("EUR", ["BRL"])
        assert result.rates == {"BRL": "5"}
        assert session.requests[0][1] == {"app_id": "app", "symbols": "BRL,EUR"}


# ── Mocks ────────────────────────────────────────────────────────────────


class TestMockProviders:

    @pytest.mark.asyncio
    async def test_defaults_and_custom_values(self):
        provider = MockPriceProvider(clock=lambda: NOW)
        provider.set_price("aapl", "178.50")
        batch = await provider.fetch_prices(["AAPL", "MSFT"])
        assert [p.close for p in batch.results] == ["178.50", "100.00"]
        assert provider.name == "mock-price"
        assert provider.call_count == 1

    @pytest.mark.asyncio
    async def test_configurable_failure_code(self):
        provider = MockExchangeRateProvider("fx")
        provider.set_failure("throttled", ProviderErrorCode.RATE_LIMITED)
        with pytest.raises(ProviderError) as exc_info:
            await provider.fetch_rates("USD", ["BRL"])
        assert exc_info.value.is_rate_limited
        provider.set_success()
        result = await provider.fetch_rates("USD", ["BRL", "USD"])
        assert result.rates == {"BRL": "1.2345", "USD": "1.0000"}

    @pytest.mark.asyncio
    async def test_health_flag(self):
        provider = MockPriceProvider(healthy=False)
        assert await provider.health_check() is False
