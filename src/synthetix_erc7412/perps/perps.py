"""Module for interacting with Synthetix Perps V3."""

from eth_utils import encode_hex
from ..contracts import get_contract
from ..utils import ether_to_wei, wei_to_ether
from ..utils.erc7412 import UPDATE_TYPE_LATEST
from ..utils.multicall import FORK_PUBLISH_TIME_OFFSET, make_pyth_fulfillment_request
from .constants import DISABLED_MARKETS, PREPARED_ORACLE_STALENESS


class Perps:
    """
    Class for interacting with Synthetix Perps V3 contracts. Provides methods for
    creating and managing accounts, depositing and withdrawing collateral,
    committing orders, and liquidating accounts.

    Use ``get_`` methods to fetch information about accounts and markets::

        markets_by_id, markets_by_name = snx.perps.get_markets()
        margin_info = snx.perps.get_margin_info()

    Other methods prepare transactions, and submit them to your RPC::

        create_tx_hash = snx.perps.create_account(submit=True)
        collateral_tx_hash = snx.perps.modify_collateral(amount=1000, market_name='sUSD', submit=True)
        order_tx_hash = snx.perps.commit_order(size=10, market_name='ETH', desired_fill_price=2000, submit=True)

    Reads that touch every market are prefixed with a single price update for all
    markets, built by ``_prepare_oracle_call``. Any feed that is still stale is
    fulfilled by the ERC-7412 multicall.

    An instance of this module is available as ``snx.perps``. If you are using a network without
    perps deployed, ``market_proxy`` is ``None`` and the methods will raise an error.

    The following contracts are required:

        - perpsFactory.PerpsMarketProxy
        - perpsFactory.PerpsAccountProxy
        - pyth_erc7412_wrapper.PythERC7412Wrapper (optional, for prepared price updates)

    :param Synthetix snx: An instance of the Synthetix class.
    :param int | None default_account_id: The default ``account_id`` to use for transactions.
    :param list | None disabled_markets: A list of market ids to disable.

    :return: An instance of the Perps class.
    :rtype: Perps
    """

    def __init__(self, snx, default_account_id: int = None, disabled_markets=None):
        self.snx = snx
        self.logger = snx.logger

        if disabled_markets is None:
            self.disabled_markets = DISABLED_MARKETS.get(snx.network_id, [])
        else:
            self.disabled_markets = disabled_markets

        self.market_proxy = None
        self.account_proxy = None
        self.oracle_address = None
        self.account_ids = []
        self.default_account_id = default_account_id
        self.market_meta = {}
        self.markets_by_id = {}
        self.markets_by_name = {}
        self.is_multicollateral = False

        try:
            self.market_proxy = get_contract(
                snx.contracts, "perpsFactory", "PerpsMarketProxy"
            )["contract"]
            self.account_proxy = get_contract(
                snx.contracts, "perpsFactory", "PerpsAccountProxy"
            )["contract"]
        except KeyError as e:
            self.logger.info(f"Perps is unavailable: {e}")
            return

        try:
            self.oracle_address = get_contract(
                snx.contracts, "pyth_erc7412_wrapper", "PythERC7412Wrapper"
            )["address"]
        except KeyError:
            self.logger.info("Prepared oracle calls are disabled")

        # check if multicollateral
        debt_check = self.market_proxy.find_functions_by_name("debt")
        if len(debt_check) == 1:
            self.is_multicollateral = True
            self.logger.info("Multicollateral perps is enabled")

        try:
            self.get_account_ids(default_account_id=default_account_id)
        except Exception as e:
            self.logger.warning(f"Failed to fetch perps accounts: {e}")

        try:
            self.get_markets()
        except Exception as e:
            self.logger.warning(f"Failed to fetch markets: {e}")

    def _resolve_market(self, market_id: int, market_name: str):
        """
        Look up the market_id and market_name for a market. If only one is provided,
        the other is resolved. If both are provided, they are checked for consistency.

        :param int | None market_id: The id of the market. If not known, provide `None`.
        :param str | None market_name: The name of the market. If not known, provide `None`.

        :return: The ``market_id`` and ``market_name`` for the market.
        :rtype: (int, str)
        """
        if market_id is None and market_name is None:
            raise ValueError("Must provide a market_id or market_name")

        if market_id is None:
            if market_name not in self.markets_by_name:
                raise ValueError(f"Invalid market_name: {market_name}")
            market_id = self.markets_by_name[market_name]["market_id"]
        elif market_id not in self.markets_by_id:
            raise ValueError(f"Invalid market_id: {market_id}")
        elif market_name is None:
            market_name = self.markets_by_id[market_id]["market_name"]
        elif self.markets_by_id[market_id]["market_name"] != market_name:
            raise ValueError(
                f"Market name {market_name} does not match market id {market_id}"
            )
        return market_id, market_name

    def _prepare_oracle_call(self, market_names: list[str] = None):
        """
        Prepare a price update for the specified markets, to pass as ``calls`` to
        the ERC-7412 multicall. Updating every feed up front avoids a retry for
        each stale feed, which reduces RPC calls for reads that touch many markets.
        If no market names are provided, all markets are updated.

        The call is made with ``require_success`` set to ``False``, since the
        wrapper reverts when a price has already been updated.

        :param [str] market_names: A list of market names to fetch prices for.
        :return: The calls to prepend, or an empty list if there is nothing to update.
        :rtype: [Call]
        """
        if self.oracle_address is None:
            return []

        if not market_names:
            market_names = [meta["symbol"] for meta in self.market_meta.values()]

        feed_ids = [
            self.snx.pyth.price_feed_ids[market_name]
            for market_name in market_names
            if market_name in self.snx.pyth.price_feed_ids
        ]
        if len(feed_ids) == 0:
            return []

        publish_time = None
        if self.snx.is_fork:
            # avoid providing "future" prices to a fork
            block = self.snx.web3.eth.get_block("latest")
            publish_time = block.timestamp - FORK_PUBLISH_TIME_OFFSET

        price_update_data = self.snx.pyth.get_feeds_data(
            feed_ids, publish_time=publish_time
        )
        return [
            make_pyth_fulfillment_request(
                self.oracle_address,
                UPDATE_TYPE_LATEST,
                feed_ids,
                price_update_data,
                PREPARED_ORACLE_STALENESS,
                fee_per_update=self.snx.erc7412.fee_per_update,
                require_success=False,
            )
        ]

    def _submit(self, tx_params, submit: bool, action: str, description: str):
        if not submit:
            return tx_params

        tx_hash = self.snx.execute_transaction(tx_params)
        self.logger.info(description)
        self.logger.info(f"{action} tx: {tx_hash}")
        return tx_hash

    # read
    def get_account_ids(self, address: str = None, default_account_id: int = None):
        """
        Fetch a list of perps ``account_id`` owned by an address. Perps accounts
        are minted as an NFT to the owner's address.

        :param str | None address: The address to fetch the account ids for. If not provided, the default address is used.
        :param int | None default_account_id: The default account ID to set after fetching.
        :return: A list of account ids.
        :rtype: [int]
        """
        if not address:
            address = self.snx.address

        balance = self.account_proxy.functions.balanceOf(address).call()
        account_ids = self.snx.erc7412.multicall(
            self.account_proxy,
            "tokenOfOwnerByIndex",
            [(address, i) for i in range(balance)],
        )

        self.account_ids = account_ids
        if default_account_id:
            self.default_account_id = default_account_id
        elif len(account_ids) > 0:
            self.default_account_id = account_ids[0]
        else:
            self.default_account_id = None
        return account_ids

    def get_markets(self):
        """
        Fetch the ids and summaries for all perps markets. Market metadata and the
        Pyth feed id of each market are fetched first, so price updates can be
        prepared for the summaries::

            markets_by_name = {
                'ETH': {
                    'market_id': 100,
                    'market_name': 'ETH',
                    'feed_id': '0xff61...',
                    'skew': -15,
                    'size': 100,
                    'max_open_interest': 10000,
                    'current_funding_rate': 0.000182,
                    'current_funding_velocity': 0.00002765,
                    'index_price': 1852.59,
                    ...
                }
            }

        :return: Market summaries keyed by `market_id` and `market_name`.
        :rtype: (dict, dict)
        """
        market_ids = [
            market_id
            for market_id in self.market_proxy.functions.getMarkets().call()
            if market_id not in self.disabled_markets
        ]

        market_metadata = self.snx.erc7412.multicall(
            self.market_proxy, "metadata", market_ids
        )
        settlement_strategies = self.snx.erc7412.multicall(
            self.market_proxy,
            "getSettlementStrategy",
            [(market_id, 0) for market_id in market_ids],
        )

        self.market_meta = {
            market_id: {
                "name": name,
                "symbol": symbol,
                "feed_id": encode_hex(settlement_strategy[4]),
            }
            for market_id, (name, symbol), settlement_strategy in zip(
                market_ids, market_metadata, settlement_strategies
            )
        }

        self.snx.pyth.update_price_feed_ids(
            {meta["symbol"]: meta["feed_id"] for meta in self.market_meta.values()}
        )

        market_summaries = self.get_market_summaries(market_ids)
        markets_by_id = {summary["market_id"]: summary for summary in market_summaries}
        markets_by_name = {
            summary["market_name"]: summary for summary in market_summaries
        }
        self.markets_by_id, self.markets_by_name = markets_by_id, markets_by_name
        return markets_by_id, markets_by_name

    def get_market_summaries(self, market_ids: list[int] = None):
        """
        Fetch the market summaries for a list of ``market_id``. All summaries and
        the interest rate are read after a single prepared price update.

        :param [int] market_ids: A list of market ids to fetch. Defaults to all markets.
        :return: A list of market summaries in the order of the input ``market_ids``.
        :rtype: [dict]
        """
        if market_ids is None:
            market_ids = list(self.market_meta.keys())

        calls = self._prepare_oracle_call()

        markets = self.snx.erc7412.multicall(
            self.market_proxy, "getMarketSummary", market_ids, calls=calls
        )
        interest_rate = self.snx.erc7412.call(
            self.market_proxy, "interestRate", calls=calls
        )

        market_summaries = []
        for market_id, market in zip(market_ids, markets):
            (
                skew,
                size,
                max_open_interest,
                current_funding_rate,
                current_funding_velocity,
                index_price,
            ) = market

            market_summaries.append(
                {
                    "market_id": market_id,
                    "market_name": self.market_meta[market_id]["symbol"],
                    "feed_id": self.market_meta[market_id]["feed_id"],
                    "skew": wei_to_ether(skew),
                    "size": wei_to_ether(size),
                    "max_open_interest": wei_to_ether(max_open_interest),
                    "interest_rate": wei_to_ether(interest_rate),
                    "current_funding_rate": wei_to_ether(current_funding_rate),
                    "current_funding_velocity": wei_to_ether(current_funding_velocity),
                    "index_price": wei_to_ether(index_price),
                }
            )
        return market_summaries

    def get_market_summary(self, market_id: int = None, market_name: str = None):
        """
        Fetch the market summary for a single market, including
        information about the market's price, open interest, funding rate,
        and skew. Provide either the `market_id` or `market_name`.

        :param int | None market_id: A market id to fetch the summary for.
        :param str | None market_name: A market name to fetch the summary for.
        :return: A dictionary with the market summary.
        :rtype: dict
        """
        market_id, market_name = self._resolve_market(market_id, market_name)
        calls = self._prepare_oracle_call([market_name])

        (
            skew,
            size,
            max_open_interest,
            current_funding_rate,
            current_funding_velocity,
            index_price,
        ) = self.snx.erc7412.call(
            self.market_proxy, "getMarketSummary", market_id, calls=calls
        )

        return {
            "market_id": market_id,
            "market_name": market_name,
            "skew": wei_to_ether(skew),
            "size": wei_to_ether(size),
            "max_open_interest": wei_to_ether(max_open_interest),
            "current_funding_rate": wei_to_ether(current_funding_rate),
            "current_funding_velocity": wei_to_ether(current_funding_velocity),
            "index_price": wei_to_ether(index_price),
        }

    def get_margin_info(self, account_id: int = None):
        """
        Fetch information about an account's margin requirements and balances.
        Accounts must maintain an ``available_margin`` above the ``maintenance_margin_requirement``
        to avoid liquidation.

        :param int | None account_id: The id of the account. If not provided, the default account is used.
        :return: A dictionary with the margin information.
        :rtype: dict
        """
        if not account_id:
            account_id = self.default_account_id

        calls = self._prepare_oracle_call()
        erc7412 = self.snx.erc7412

        total_collateral_value = erc7412.call(
            self.market_proxy, "totalCollateralValue", account_id, calls=calls
        )
        available_margin = erc7412.call(
            self.market_proxy, "getAvailableMargin", account_id, calls=calls
        )
        withdrawable_margin = erc7412.call(
            self.market_proxy, "getWithdrawableMargin", account_id, calls=calls
        )
        (
            initial_margin_requirement,
            maintenance_margin_requirement,
            max_liquidation_reward,
        ) = erc7412.call(
            self.market_proxy, "getRequiredMargins", account_id, calls=calls
        )

        if self.is_multicollateral:
            collateral_ids = erc7412.call(
                self.market_proxy, "getAccountCollateralIds", account_id, calls=calls
            )
            debt = erc7412.call(self.market_proxy, "debt", account_id, calls=calls)
            collateral_amounts = erc7412.multicall(
                self.market_proxy,
                "getCollateralAmount",
                [(account_id, collateral_id) for collateral_id in collateral_ids],
                calls=calls,
            )
            collateral_balances = {
                collateral_id: wei_to_ether(amount)
                for collateral_id, amount in zip(collateral_ids, collateral_amounts)
            }
        else:
            collateral_balances = {0: wei_to_ether(total_collateral_value)}
            debt = 0

        return {
            "total_collateral_value": wei_to_ether(total_collateral_value),
            "collateral_balances": collateral_balances,
            "debt": wei_to_ether(debt),
            "available_margin": wei_to_ether(available_margin),
            "withdrawable_margin": wei_to_ether(withdrawable_margin),
            "initial_margin_requirement": wei_to_ether(initial_margin_requirement),
            "maintenance_margin_requirement": wei_to_ether(
                maintenance_margin_requirement
            ),
            "max_liquidation_reward": wei_to_ether(max_liquidation_reward),
        }

    def get_can_liquidate(self, account_id: int = None):
        """
        Check if an ``account_id`` is eligible for liquidation.

        :param int | None account_id: The id of the account to check. If not provided, the default account is used.
        :return: A boolean indicating if the account is eligible for liquidation.
        :rtype: bool
        """
        if not account_id:
            account_id = self.default_account_id

        return self.snx.erc7412.call(
            self.market_proxy,
            "canLiquidate",
            account_id,
            calls=self._prepare_oracle_call(),
        )

    def get_can_liquidates(self, account_ids: list[int]):
        """
        Check if a batch of ``account_id`` are eligible for liquidation.

        :param [int] account_ids: A list of account ids to check.
        :return: A list of tuples containing the ``account_id`` and a boolean indicating if the account is eligible for liquidation.
        :rtype: [(int, bool)]
        """
        can_liquidates = self.snx.erc7412.multicall(
            self.market_proxy,
            "canLiquidate",
            account_ids,
            calls=self._prepare_oracle_call(),
        )
        return list(zip(account_ids, can_liquidates))

    # transactions
    def create_account(self, account_id: int = None, submit: bool = False):
        """
        Create a perps account. An account NFT is minted to the sender, who
        owns the account.

        :param int | None account_id: Specify the id of the account. If not provided, the next available id is used.
        :param boolean submit: If ``True``, submit the transaction to the blockchain.

        :return: If `submit`, returns the transaction hash. Otherwise, returns the transaction.
        :rtype: str | dict
        """
        tx_args = [account_id] if account_id else []
        tx_params = self.snx.erc7412.write(self.market_proxy, "createAccount", tx_args)

        tx_hash = self._submit(
            tx_params,
            submit,
            "create_account",
            f"Creating account for {self.snx.address}",
        )
        if submit:
            # wait for the transaction, then refetch the ids
            self.snx.wait(tx_hash)
            self.get_account_ids()
        return tx_hash

    def modify_collateral(
        self,
        amount: float,
        market_id: int = None,
        market_name: str = None,
        account_id: int = None,
        submit: bool = False,
    ):
        """
        Move collateral in or out of a perps account. The ``market_id`` here refers
        to the spot market id of the collateral, not a perps market id. Make sure to
        approve the market proxy to transfer the collateral before calling this function.

        :param float amount: The amount of collateral to move. Positive values deposit collateral, negative values withdraw collateral.
        :param int | None market_id: The spot market id of the collateral.
        :param str | None market_name: The spot market name of the collateral.
        :param int | None account_id: The id of the account. If not provided, the default account is used.
        :param bool submit: If ``True``, submit the transaction to the blockchain.
        :return: If ``submit``, returns the transaction hash. Otherwise, returns the transaction.
        :rtype: str | dict
        """
        market_id, market_name = self.snx.spot._resolve_market(market_id, market_name)

        if not account_id:
            account_id = self.default_account_id

        tx_params = self.snx.erc7412.write(
            self.market_proxy,
            "modifyCollateral",
            [account_id, market_id, ether_to_wei(amount)],
        )

        return self._submit(
            tx_params,
            submit,
            "modify_collateral",
            f"Transferring {amount} {market_name} for account {account_id}",
        )

    def commit_order(
        self,
        size: float,
        settlement_strategy_id: int = 0,
        market_id: int = None,
        market_name: str = None,
        account_id: int = None,
        desired_fill_price: float = None,
        max_price_impact: float = None,
        submit: bool = False,
    ):
        """
        Submit an order to the specified market. Keepers will attempt to fill the order
        according to the settlement strategy. If ``desired_fill_price`` is provided, the order
        will be filled at that price or better. Otherwise the acceptable price is calculated
        from the index price and ``max_price_impact``.

        :param float size: The size of the order to submit. Negative sizes are shorts.
        :param int settlement_strategy_id: The id of the settlement strategy to use.
        :param int | None market_id: The id of the market to submit the order to.
        :param str | None market_name: The name of the market to submit the order to.
        :param int | None account_id: The id of the account to submit the order for. Defaults to `default_account_id`.
        :param float | None desired_fill_price: The max price for longs and minimum price for shorts.
        :param float | None max_price_impact: The maximum price impact as a percentage (1.0 = 1%). Defaults to `snx.max_price_impact`.
        :param bool submit: If ``True``, submit the transaction to the blockchain.

        :return: If `submit`, returns the transaction hash. Otherwise, returns the transaction.
        :rtype: str | dict
        """
        market_id, market_name = self._resolve_market(market_id, market_name)

        if desired_fill_price and max_price_impact:
            raise ValueError("Cannot set both desired_fill_price and max_price_impact")

        is_short = -1 if size < 0 else 1
        size_wei = ether_to_wei(abs(size)) * is_short

        if desired_fill_price:
            acceptable_price = desired_fill_price
        else:
            market_summary = self.get_market_summary(market_id)

            if not max_price_impact:
                max_price_impact = self.snx.max_price_impact
            price_impact = 1 + is_short * max_price_impact / 100
            acceptable_price = market_summary["index_price"] * price_impact

        if not account_id:
            account_id = self.default_account_id

        order = {
            "marketId": market_id,
            "accountId": account_id,
            "sizeDelta": size_wei,
            "settlementStrategyId": settlement_strategy_id,
            "acceptablePrice": ether_to_wei(acceptable_price),
            "trackingCode": self.snx.tracking_code,
            "referrer": self.snx.referrer,
        }
        tx_params = self.snx.erc7412.write(self.market_proxy, "commitOrder", [order])

        return self._submit(
            tx_params,
            submit,
            "commit_order",
            f"Committing order size {size_wei} ({size}) to {market_name} (id: {market_id}) for account {account_id}",
        )

    def liquidate(
        self, account_id: int = None, submit: bool = False, static: bool = False
    ):
        """
        Submit a liquidation for an account, or static call the liquidation function to fetch
        the liquidation reward. A nonzero static result means more value can be liquidated.
        This function can not be called if ``submit`` and ``static`` are true.

        :param int | None account_id: The id of the account to liquidate. If not provided, the default account is used.
        :param bool submit: If ``True``, submit the transaction to the blockchain.
        :param bool static: If ``True``, static call the liquidation function to fetch the liquidation reward.
        :return: If ``submit``, returns the transaction hash. If ``static``, returns the liquidation reward. Otherwise, returns the transaction.
        :rtype: str | dict | float
        """
        if not account_id:
            account_id = self.default_account_id

        if submit and static:
            raise ValueError("Cannot submit and use static in the same transaction")

        if static:
            liquidation_reward = self.snx.erc7412.call(
                self.market_proxy, "liquidate", account_id
            )
            return wei_to_ether(liquidation_reward)

        tx_params = self.snx.erc7412.write(self.market_proxy, "liquidate", account_id)
        return self._submit(
            tx_params, submit, "liquidate", f"Liquidating account {account_id}"
        )
