"""Module for interacting with Synthetix V3 spot markets."""

from typing import Literal

from web3.constants import ADDRESS_ZERO

from ..contracts import get_contract
from ..utils import ether_to_wei, wei_to_ether, format_ether
from .constants import DISABLED_MARKETS, ONE_TO_ONE_MARKETS, SYNTH_PAGE_SIZE, MAX_SYNTH_PAGES


class Spot:
    """
    Class for interacting with Synthetix V3 spot market contracts. Provides methods
    for wrapping and unwrapping assets and for atomic orders.

    Use ``get_`` methods to fetch information about balances, allowances, and markets::

        markets_by_id, markets_by_name = snx.spot.get_markets()
        balance = snx.spot.get_balance(market_name='sUSD')
        allowance = snx.spot.get_allowance(snx.spot.market_proxy.address, market_name='sUSD')

    Other methods prepare transactions through the ERC-7412 multicall, and
    submit them to your RPC::

        wrap_tx_hash = snx.spot.wrap(100, market_name='sUSDC', submit=True)
        unwrap_tx_hash = snx.spot.wrap(-100, market_name='sUSDC', submit=True)
        atomic_buy_tx_hash = snx.spot.atomic_order('buy', 100, market_name='sUSDC', submit=True)

    An instance of this module is available as ``snx.spot``. If you are using a network without
    spot contracts deployed, ``market_proxy`` is ``None`` and the methods will raise an error.

    The following contracts are required:

        - spotFactory.SpotMarketProxy

    :param Synthetix snx: An instance of the Synthetix class.

    :return: An instance of the Spot class.
    :rtype: Spot
    """

    def __init__(self, snx):
        self.snx = snx
        self.logger = snx.logger

        self.disabled_markets = DISABLED_MARKETS.get(snx.network_id, [])
        self.market_proxy = None
        self.markets_by_id = {}
        self.markets_by_name = {}

        try:
            self.market_proxy = get_contract(
                snx.contracts, "spotFactory", "SpotMarketProxy"
            )["contract"]
        except KeyError as e:
            self.logger.info(f"Spot is unavailable: {e}")
            return

        try:
            self.markets_by_id, self.markets_by_name = self.get_markets()
        except Exception as e:
            self.logger.warning(f"Failed to fetch spot markets: {e}")

    # internals
    def _resolve_market(self, market_id: int, market_name: str):
        """
        Look up the market_id and market_name for a market. If only one is provided,
        the other is resolved.

        :param int | None market_id: The id of the market. If not known, provide ``None``.
        :param str | None market_name: The name of the market. If not known, provide ``None``.

        :return: The ``market_id`` and ``market_name`` for the market.
        :rtype: (int, str)
        """
        if market_id is None and market_name is None:
            raise ValueError("Must provide a market_id or market_name")

        if market_id is None:
            if market_name not in self.markets_by_name:
                raise ValueError(f"Invalid market_name: {market_name}")
            market_id = self.markets_by_name[market_name]["market_id"]
        elif market_name is None:
            if market_id not in self.markets_by_id:
                raise ValueError(f"Invalid market_id: {market_id}")
            market_name = self.markets_by_id[market_id]["market_name"]
        return market_id, market_name

    def _get_synth_contract(self, market_id: int = None, market_name: str = None):
        """Get the ERC20 contract of the synth for a market"""
        market_id, market_name = self._resolve_market(market_id, market_name)
        return self.markets_by_id[market_id]["contract"]

    def _format_size(self, size: float, market_id: int):
        """
        Format a size in the decimals of the wrapped collateral. For example,
        USDC uses 6 decimals, so 100 is formatted as ``100000000``.

        :param float size: The size as an ether value (e.g. 100).
        :param int market_id: The id of the market.

        :return: The formatted size.
        :rtype: int
        """
        collateral_type, _ = self.market_proxy.functions.getWrapper(market_id).call()

        wrapper_contract = self.snx.web3.eth.contract(
            address=self.snx.web3.to_checksum_address(collateral_type),
            abi=self.snx.contracts["common"]["ERC20"]["abi"],
        )
        decimals = wrapper_contract.functions.decimals().call()
        return format_ether(size, decimals=decimals)

    # read
    def get_markets(self):
        """
        Fetches the synth of every spot market on the network. Synth addresses
        are requested in pages with ``getSynth`` until an empty market is found.
        Each synth is an ERC20 token, so these contracts can be used for balances
        and allowances.

        The market metadata is returned as a tuple of two dictionaries. The first
        is keyed by ``market_id`` and the second is keyed by ``market_name``::

            >>> snx.spot.markets_by_name
            { 'sUSD': {'market_id': 0, 'contract': ...}, ...}

            >>> snx.spot.markets_by_id
            { 0: {'market_name': 'sUSD', 'contract': ...}, ...}

        :return: Market info keyed by ``market_id`` and ``market_name``.
        :rtype: (dict, dict)
        """
        synths = []
        for page in range(MAX_SYNTH_PAGES):
            market_ids = range(page * SYNTH_PAGE_SIZE, (page + 1) * SYNTH_PAGE_SIZE)
            addresses = self.snx.erc7412.multicall(
                self.market_proxy, "getSynth", market_ids
            )

            synths.extend(
                [
                    (market_id, address)
                    for market_id, address in zip(market_ids, addresses)
                    if address != ADDRESS_ZERO
                    and market_id not in self.disabled_markets
                ]
            )
            if addresses[-1] == ADDRESS_ZERO:
                break

        markets_by_id = {}
        if self.snx.susd_token is not None:
            markets_by_id[0] = {
                "market_id": 0,
                "market_name": "sUSD",
                "symbol": "USD",
                "contract": self.snx.susd_token,
            }

        for market_id, address in synths:
            synth_contract = self.snx.web3.eth.contract(
                address=self.snx.web3.to_checksum_address(address),
                abi=self.snx.contracts["common"]["ERC20"]["abi"],
            )
            market_name = synth_contract.functions.symbol().call()
            markets_by_id[market_id] = {
                "market_id": market_id,
                "market_name": market_name,
                "symbol": market_name[1:],
                "contract": synth_contract,
            }

        markets_by_name = {
            market["market_name"]: market for market in markets_by_id.values()
        }
        return markets_by_id, markets_by_name

    def get_balance(
        self, address: str = None, market_id: int = None, market_name: str = None
    ):
        """
        Get the balance of a spot synth. Provide either a ``market_id`` or ``market_name``
        to choose the synth.

        :param str | None address: The address to check the balance of. If not provided, the
            current account will be used.
        :param int | None market_id: The id of the market.
        :param str | None market_name: The name of the market.

        :return: The balance of the synth in ether.
        :rtype: float
        """
        if address is None:
            address = self.snx.address

        synth_contract = self._get_synth_contract(market_id, market_name)
        balance = synth_contract.functions.balanceOf(address).call()
        return wei_to_ether(balance)

    def get_allowance(
        self,
        target_address: str,
        address: str = None,
        market_id: int = None,
        market_name: str = None,
    ):
        """
        Get the allowance for a ``target_address`` to transfer from ``address``.

        :param str target_address: The address for which to check allowance.
        :param str address: The owner address to check allowance for.
        :param int market_id: The id of the market.
        :param str market_name: The name of the market.

        :return: The allowance in ether.
        :rtype: float
        """
        if address is None:
            address = self.snx.address

        synth_contract = self._get_synth_contract(market_id, market_name)
        allowance = synth_contract.functions.allowance(address, target_address).call()
        return wei_to_ether(allowance)

    # transactions
    def _get_min_amount_received(self, side, size, slippage_tolerance, market_id, market_name):
        if market_name in ONE_TO_ONE_MARKETS.get(self.snx.network_id, []):
            return size

        symbol = self.markets_by_id[market_id]["symbol"]
        if symbol not in self.snx.pyth.price_feed_ids:
            raise ValueError(
                f"No price feed for {market_name}, provide min_amount_received"
            )

        feed_id = self.snx.pyth.price_feed_ids[symbol]
        price_data = self.snx.pyth.get_price_from_ids([feed_id])
        price = price_data["meta"][feed_id]["price"]

        trade_size = size / price if side == "buy" else size * price
        return trade_size * (1 - slippage_tolerance)

    def atomic_order(
        self,
        side: Literal["buy", "sell"],
        size: float,
        slippage_tolerance: float = 0,
        min_amount_received: float = None,
        market_id: int = None,
        market_name: str = None,
        submit: bool = False,
    ):
        """
        Execute an atomic buy or sell order on the spot market. Amounts are
        transferred directly, there is nothing to settle later::

            atomic_order("sell", 100, market_name="sUSDC")

        Markets that swap 1:1 with sUSD default to receiving ``size``. Other markets
        use the Pyth price and ``slippage_tolerance`` unless ``min_amount_received``
        is provided.

        :param Literal["buy", "sell"] side: The side of the order (buy/sell).
        :param float size: The order size in ether.
        :param float slippage_tolerance: The slippage tolerance as a fraction (0.01 = 1%). Default is 0.
        :param float min_amount_received: The minimum amount to receive in ether units.
        :param int market_id: The ID of the market.
        :param str market_name: The name of the market.
        :param bool submit: Whether to broadcast the transaction.

        :return: The transaction dict if submit=False, otherwise the tx hash.
        """
        market_id, market_name = self._resolve_market(market_id, market_name)

        if min_amount_received is None:
            min_amount_received = self._get_min_amount_received(
                side, size, slippage_tolerance, market_id, market_name
            )

        size_wei = ether_to_wei(size)
        tx_args = [
            market_id,
            size_wei,
            ether_to_wei(min_amount_received),
            self.snx.referrer,
        ]
        tx_params = self.snx.erc7412.write(self.market_proxy, side, tx_args)

        if submit:
            tx_hash = self.snx.execute_transaction(tx_params)
            self.logger.info(
                f"Committing {side} atomic order of size {size_wei} ({size}) to {market_name} (id: {market_id})"
            )
            self.logger.info(f"atomic {side} tx: {tx_hash}")
            return tx_hash
        return tx_params

    def wrap(
        self,
        size: float,
        market_id: int = None,
        market_name: str = None,
        submit: bool = False,
    ):
        """
        Wrap an underlying asset into a synth if ``size`` is positive, or unwrap
        the synth back to the asset if it is negative::

            wrap(100, market_name="sUSDC")  # wrap 100 USDC into sUSDC
            wrap(-100, market_name="sUSDC") # unwrap 100 sUSDC into USDC

        :param float size: The amount of the asset to wrap/unwrap.
        :param int market_id: The ID of the market.
        :param str market_name: The name of the market.
        :param bool submit: Whether to broadcast the transaction.

        :return: The transaction dict if submit=False, otherwise the tx hash.
        """
        market_id, market_name = self._resolve_market(market_id, market_name)

        if size < 0:
            side = "unwrap"
            size_wei = ether_to_wei(-size)
            received_wei = self._format_size(-size, market_id)
        else:
            side = "wrap"
            size_wei = self._format_size(size, market_id)
            received_wei = ether_to_wei(size)

        tx_params = self.snx.erc7412.write(
            self.market_proxy, side, [market_id, size_wei, received_wei]
        )

        if submit:
            tx_hash = self.snx.execute_transaction(tx_params)
            self.logger.info(
                f"{side} of size {size_wei} ({size}) to {market_name} (id: {market_id})"
            )
            self.logger.info(f"{side} tx: {tx_hash}")
            return tx_hash
        return tx_params
