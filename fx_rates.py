from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from functools import lru_cache
from urllib.error import URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from config import get_settings

FRANKFURTER_URL = "https://api.frankfurter.app"
MICROS = Decimal("1000000")


@dataclass(frozen=True)
class FxQuote:
    base: str
    quote: str
    rate: Decimal  # units of quote per 1 base
    rate_date: date

    @property
    def rate_micros(self) -> int:
        return FxRateService.rate_to_micros(self.rate)


class FxRateService:
    """Read-only exchange rate source used when a transfer omits its rate."""

    def __init__(self) -> None:
        settings = get_settings()
        self.provider = (settings.fx_provider or "frankfurter").lower()
        self.timeout = settings.fx_timeout_secs

    def quote_for_date(self, base: str, quote: str, on_date: date) -> FxQuote:
        base, quote = base.upper(), quote.upper()
        if base == quote:
            return FxQuote(base=base, quote=quote, rate=Decimal("1"), rate_date=on_date)
        if self.provider != "frankfurter":
            raise ValueError(f"Unsupported FX provider: {self.provider}")
        return _frankfurter_quote(base, quote, on_date, self.timeout)

    def rate_micros_for_date(self, base: str, quote: str, on_date: date) -> int:
        return self.quote_for_date(base, quote, on_date).rate_micros

    @staticmethod
    def rate_to_micros(rate: Decimal) -> int:
        return int((Decimal(rate) * MICROS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# Historical rates never change, so one lookup per (pair, day) is enough.
@lru_cache(maxsize=2048)
def _frankfurter_quote(base: str, quote: str, on_date: date, timeout: float) -> FxQuote:
    query = urlencode({"from": base, "to": quote})
    req = Request(
        f"{FRANKFURTER_URL}/{on_date.isoformat()}?{query}",
        headers={"Accept": "application/json"},
    )
    try:
        with urlopen(req, timeout=timeout) as resp:
            payload = json.load(resp)
    except (URLError, TimeoutError, json.JSONDecodeError) as exc:
        raise RuntimeError(f"FX lookup failed for {base}/{quote} on {on_date}") from exc

    try:
        return FxQuote(
            base=base,
            quote=quote,
            rate=Decimal(str(payload["rates"][quote])),
            rate_date=date.fromisoformat(payload["date"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise RuntimeError(f"Unexpected FX response for {base}/{quote}") from exc
