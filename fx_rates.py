from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional, Protocol
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import Settings


logger = logging.getLogger(__name__)

EXCHANGERATE_API_URL = "https://api.exchangerate-api.com/v4/latest/"


class RateProvider(Protocol):
    name: str

    def fetch_rates(self, base: str) -> dict[str, Decimal]: ...


@dataclass(frozen=True)
class RateTable:
    provider: str
    base: str
    rates: dict[str, Decimal]  # quote per 1 base
    fetched_at: datetime


class ExchangeRateApiProvider:
    name = "exchangerate-api"

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout

    def fetch_rates(self, base: str) -> dict[str, Decimal]:
        url = EXCHANGERATE_API_URL + base.upper()
        req = Request(url, headers={"Accept": "application/json"})
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RuntimeError(f"Failed to fetch exchange rates for {base}") from exc

        try:
            raw_rates = payload["rates"]
            return {code.upper(): Decimal(str(value)) for code, value in raw_rates.items()}
        except Exception as exc:
            raise RuntimeError("Unexpected exchange rate provider response") from exc


def provider_from_settings(settings: Settings) -> RateProvider:
    provider = (settings.fx_provider or "exchangerate-api").lower()
    if provider != "exchangerate-api":
        raise ValueError(f"Unsupported FX provider: {provider}")
    return ExchangeRateApiProvider(timeout=settings.fx_timeout_secs)


class FxRateService:
    def __init__(
        self,
        provider: RateProvider,
        *,
        cache_hours: int = 24,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.provider = provider
        self.cache_ttl = timedelta(hours=cache_hours)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cache: dict[str, RateTable] = {}

    def _rates_for(self, base: str) -> RateTable:
        now = self._clock()
        cached = self._cache.get(base)
        if cached and now - cached.fetched_at <= self.cache_ttl:
            return cached
        rates = self.provider.fetch_rates(base)
        table = RateTable(
            provider=self.provider.name, base=base, rates=rates, fetched_at=now
        )
        self._cache[base] = table
        logger.info(f"fx_fetch: provider={table.provider} base={base} count={len(rates)}")
        return table

    def get_rate(self, base: str, quote: str) -> Decimal:
        base = base.upper()
        quote = quote.upper()
        if base == quote:
            return Decimal("1")
        table = self._rates_for(base)
        rate = table.rates.get(quote)
        if rate is None:
            raise RuntimeError(f"No exchange rate from {base} to {quote}")
        return rate

    def convert_cents(self, cents: int, base: str, quote: str) -> int:
        rate = self.get_rate(base, quote)
        converted = (Decimal(cents) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return int(converted)

    def clear_cache(self) -> None:
        self._cache.clear()
