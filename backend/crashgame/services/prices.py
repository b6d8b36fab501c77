"""Spot prices from CoinGecko with last-known/fallback degradation.

The engine only ever reads ``current_price``/``snapshot``, which never block on
the network. ``refresh`` is driven by the RoundManager price loop; a failed
fetch is logged and the previous prices stay in effect.
"""
import logging
import threading
from typing import Dict, Optional

import requests

from crashgame.services.game.errors import ExternalServiceError, ValidationError

COINGECKO_IDS = {
    'BTC': 'bitcoin',
    'ETH': 'ethereum',
}


class PriceOracle:
    def __init__(
        self,
        url: str,
        fallback_prices: Dict[str, float],
        timeout: float = 5,
        session: Optional[requests.Session] = None,
        logger=None,
    ):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._prices = dict(fallback_prices)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._prices)

    def current_price(self, crypto_type: str) -> float:
        with self._lock:
            price = self._prices.get(crypto_type)
        if price is None:
            raise ValidationError(f"No price available for {crypto_type!r}")
        return price

    def fetch(self) -> Dict[str, float]:
        symbols = [s for s in self.snapshot() if s in COINGECKO_IDS]
        params = {
            'ids': ','.join(COINGECKO_IDS[s] for s in symbols),
            'vs_currencies': 'usd',
        }
        try:
            res = self.session.get(self.url, params=params, timeout=self.timeout)
            res.raise_for_status()
            data = res.json()
        except (requests.RequestException, ValueError) as exc:
            raise ExternalServiceError(f"Price feed unreachable: {exc}") from exc

        fetched = {}
        for symbol in symbols:
            try:
                price = float(data[COINGECKO_IDS[symbol]]['usd'])
            except (KeyError, TypeError, ValueError):
                raise ExternalServiceError(f"Price feed returned no usd price for {symbol}")
            if price <= 0:
                raise ExternalServiceError(f"Price feed returned non-positive price for {symbol}: {price}")
            fetched[symbol] = price
        return fetched

    def refresh(self) -> Dict[str, float]:
        try:
            fetched = self.fetch()
        except ExternalServiceError as exc:
            self.logger.warning(f"[price-fallback] keeping last known prices: {exc.message}")
            return self.snapshot()
        with self._lock:
            self._prices.update(fetched)
            prices = dict(self._prices)
        self.logger.info(f"[price-update] {prices}")
        return prices
