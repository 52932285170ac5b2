"""Module initializing a connection to the Pyth price service."""

import base64
import binascii
import time

import requests
from eth_utils import decode_hex

from ..constants import DEFAULT_PRICE_SERVICE_TIMEOUT
from ..exceptions import PriceServiceError


class Pyth:
    """
    Class for interacting with the Pyth price service. The price service is
    connected to the endpoint specified as ``price_service_endpoint`` when
    initializing the ``Synthetix`` class::

        snx = Synthetix(
            ...,
            price_service_endpoint='https://hermes.pyth.network'
        )

    If an endpoint isn't specified, the default endpoint is used. The default
    endpoint should be considered unreliable for production applications.

    The ERC-7412 multicall uses ``get_feeds_data`` to fetch one price update per
    feed id. Prices and metadata can be fetched for feed ids or symbols::

        price_update_data = snx.pyth.get_feeds_data(['0x12345...', '0xabcde...'])
        price_data_symbol = snx.pyth.get_price_from_symbols(['SNX', 'ETH'])
        price_data_id = snx.pyth.get_price_from_ids(['0x12345...', '0xabcde...'])

    Failed requests raise ``PriceServiceError``.

    :param logging.Logger logger: Logger for requests and failures
    :param int cache_ttl: Cache time-to-live in seconds
    :param str price_service_endpoint: Pyth price service endpoint
    :param int timeout: Request timeout in seconds
    :return: Pyth class instance
    :rtype: Pyth
    """

    def __init__(
        self,
        logger,
        cache_ttl: int,
        price_service_endpoint: str = None,
        timeout: int = DEFAULT_PRICE_SERVICE_TIMEOUT,
    ):
        self.logger = logger

        self._price_service_endpoint = price_service_endpoint
        self.timeout = timeout
        self.price_feed_ids = {}
        self.symbol_lookup = {}

        # set up a cache
        self.cache_ttl = cache_ttl
        self._cache = {}

    def _check_cache(self, feed_ids: list[str]):
        """
        Check the cache for the latest price data for a list of feed ids. Entries
        are invalidated after the time-to-live.

        :param [str] feed_ids: List of feed ids to fetch data for
        :return: Cached price data
        :rtype: dict | None
        """
        self._purge_cache()
        # update data is ordered like the request, so the order is part of the key
        cache_key = tuple(feed_ids)
        if cache_key in self._cache:
            return self._cache[cache_key]
        return None

    def _purge_cache(self):
        self._cache = {
            k: v
            for k, v in self._cache.items()
            if int(time.time()) - v["timestamp"] < self.cache_ttl
        }

    def update_price_feed_ids(self, feed_ids: dict):
        """
        Update the price feed IDs for the Pyth price service.
        Additionally sets a lookup for feed_id to symbol.

        :param dict feed_ids: Dictionary of symbol to feed id
        """
        self.price_feed_ids.update(feed_ids)

        # reverse it and set a lookup from feed_id to symbol
        self.symbol_lookup = {v: k for k, v in self.price_feed_ids.items()}

    def _get(self, path: str, params: dict):
        url = f"{self._price_service_endpoint}{path}"
        try:
            response = requests.get(url, params, timeout=self.timeout)
        except requests.RequestException as err:
            self.logger.error(f"Error fetching price data: {err}")
            raise PriceServiceError(f"Request to {url} failed: {err}") from err

        if response.status_code != 200:
            self.logger.error(f"Error fetching price data: {response.text}")
            raise PriceServiceError(
                f"Price service returned {response.status_code}: {response.text}"
            )

        try:
            return response.json()
        except ValueError as err:
            raise PriceServiceError(f"Invalid price service response: {err}") from err

    def get_feeds_data(self, feed_ids: list[str], publish_time: int | None = None):
        """
        Fetch price update data for a list of feed ids, one update per feed id in
        the same order. This is the data passed to the oracle when fulfilling an
        ERC-7412 request. Specify a publish time to fetch the update published at
        that time rather than the latest one.

        Usage::

            >>> snx.pyth.get_feeds_data(['0x12345...', '0xabcde...'])
            [b'...', b'...']

        :param [str] feed_ids: List of feed ids to fetch data for
        :param int publish_time: Publish time for benchmark data
        :return: List of price update data
        :rtype: [bytes]
        """
        if len(feed_ids) == 0:
            return []

        market_names = ",".join(
            [
                self.symbol_lookup[feed_id]
                for feed_id in feed_ids
                if feed_id in self.symbol_lookup
            ]
        )
        self.logger.info(
            f"Fetching Pyth data for {len(feed_ids)} markets ({market_names}) @ {publish_time if publish_time else 'latest'}"
        )

        try:
            if publish_time is None:
                raw_updates = self._get("/api/latest_vaas", {"ids[]": feed_ids})
            else:
                raw_updates = [
                    self._get(
                        "/api/get_vaa", {"id": feed_id, "publish_time": publish_time}
                    )["vaa"]
                    for feed_id in feed_ids
                ]
            price_update_data = [
                base64.b64decode(raw_update) for raw_update in raw_updates
            ]
        except (KeyError, TypeError, binascii.Error) as err:
            raise PriceServiceError(f"Invalid price update data: {err}") from err

        if len(price_update_data) != len(feed_ids):
            raise PriceServiceError(
                f"Expected {len(feed_ids)} price updates, received {len(price_update_data)}"
            )
        return price_update_data

    def _fetch_prices(self, feed_ids: list[str], publish_time: int | None = None):
        """
        An internal method for fetching prices and update data from the Pyth price
        service, deciding which endpoint to use based on the presence of a publish time.

        :param [str] feed_ids: List of feed ids to fetch data for
        :param int publish_time: Publish time for benchmark data
        :return: Price update data and metadata
        :rtype: dict
        """
        self.logger.debug(f"Fetching prices for feed ids: {feed_ids}")

        params = {"ids[]": feed_ids, "encoding": "hex"}
        if publish_time is None:
            response_data = self._get("/v2/updates/price/latest", params)
        else:
            response_data = self._get(f"/v2/updates/price/{publish_time}", params)

        try:
            price_update_data = [
                decode_hex(f"0x{raw_pud}")
                for raw_pud in response_data["binary"]["data"]
            ]

            meta = {}
            for feed_data in response_data["parsed"]:
                feed_id = f"0x{feed_data['id']}"
                meta[feed_id] = {
                    "symbol": self.symbol_lookup.get(feed_id, "N/A"),
                    "price": int(feed_data["price"]["price"])
                    * 10 ** feed_data["price"]["expo"],
                    "publish_time": feed_data["price"]["publish_time"],
                }
        except (KeyError, TypeError, ValueError) as err:
            raise PriceServiceError(f"Invalid price service response: {err}") from err

        pyth_data = {
            "timestamp": int(time.time()),
            "price_update_data": price_update_data,
            "meta": meta,
        }

        # only cache latest prices
        if self.cache_ttl > 0 and publish_time is None:
            self._cache[tuple(feed_ids)] = pyth_data
        return pyth_data

    def get_price_from_ids(self, feed_ids: list[str], publish_time: int | None = None):
        """
        Fetch the latest Pyth price data for a list of feed ids. This function
        calls the V2 endpoint ``updates/price/latest`` to fetch the data. Specify a
        publish time in order to fetch benchmark data.

        Usage::

            >>> snx.pyth.get_price_from_ids(['0x12345...', '0xabcde...'])
            {
                "timestamp": 1621203960,
                "price_update_data": [b'...'],
                "meta": {
                    "0x12345...": {
                        "symbol": "ETH",
                        "price": 2000,
                        "publish_time": 1621203900
                    }
                }
            }

        :param [str] feed_ids: List of feed ids to fetch data for
        :param int publish_time: Publish time for benchmark data
        :return: Dictionary with price update data and metadata
        :rtype: dict
        """
        cached_data = (
            self._check_cache(feed_ids)
            if self.cache_ttl > 0 and publish_time is None
            else None
        )
        if cached_data:
            self.logger.info("Using cached Pyth data")
            return cached_data
        return self._fetch_prices(feed_ids, publish_time=publish_time)

    def get_price_from_symbols(self, symbols: list[str], publish_time: int | None = None):
        """
        Fetch the latest Pyth price data for a list of market symbols. This
        function is the same as ``get_price_from_ids`` but uses the symbol
        to fetch the feed id from the lookup table.

        :param [str] symbols: List of symbols to fetch data for
        :param int publish_time: Publish time for benchmark data
        :return: Dictionary with price update data and metadata
        :rtype: dict
        """
        missing_symbols = [s for s in symbols if s not in self.price_feed_ids]
        if len(missing_symbols) > 0:
            raise PriceServiceError(f"Feed ids not found for symbols: {missing_symbols}")

        feed_ids = [self.price_feed_ids[symbol] for symbol in symbols]
        return self.get_price_from_ids(feed_ids, publish_time=publish_time)
