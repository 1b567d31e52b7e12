"""Data endpoints — prices, exchange rates and fundamentals (cache-first, with freshness)."""
from fastapi import APIRouter, Depends, Query, Request

from marketfeed.api.v2.models import ExchangeRatesResponse, FundamentalsResponse, PricesResponse
from marketfeed.core.data.providers.types import ServiceResult
from marketfeed.core.data.services import DataServices

router = APIRouter(tags=["Data"])


def get_data_services(request: Request) -> DataServices:
    return request.app.state.data_services


def _split(csv: str) -> list[str]:
    return [part for part in csv.split(",") if part.strip()]


def _envelope(result: ServiceResult, data) -> dict:
    return {
        "data": data,
        "from_cache": result.from_cache,
        "provider": result.provider,
        "freshness": result.freshness.to_dict(),
    }


@router.get("/data/prices", response_model=PricesResponse)
async def get_prices(
    symbols: str = Query(..., description="Comma-separated symbols, e.g. AAPL,MSFT"),
    refresh: bool = Query(False, description="Skip the cache and go to the providers"),
    services: DataServices = Depends(get_data_services),
):
    result = await services.prices.get_prices(_split(symbols), skip_cache=refresh)
    return _envelope(result, [p.to_dict() for p in result.data])


@router.get("/data/exchange-rates", response_model=ExchangeRatesResponse)
async def get_exchange_rates(
    base: str = Query("USD"),
    targets: str = Query(..., description="Comma-separated currency codes, e.g. BRL,EUR"),
    refresh: bool = Query(False),
    services: DataServices = Depends(get_data_services),
):
    result = await services.exchange_rates.get_rates(base, _split(targets), skip_cache=refresh)
    return _envelope(result, result.data.to_dict())


@router.get("/data/fundamentals", response_model=FundamentalsResponse)
async def get_fundamentals(
    symbols: str = Query(...),
    refresh: bool = Query(False),
    services: DataServices = Depends(get_data_services),
):
    result = await services.fundamentals.get_fundamentals(_split(symbols), skip_cache=refresh)
    return _envelope(result, [f.to_dict() for f in result.data])
