"""Module for interacting with Synthetix V3 Core."""

from ..contracts import get_contract
from ..utils import ether_to_wei, wei_to_ether


class Core:
    """
    Class for interacting with Synthetix V3 core contracts.

    Reads that depend on oracle prices go through the ERC-7412 multicall, so
    stale prices are fulfilled before results are returned::

        account_ids = snx.core.get_account_ids()
        usd_token = snx.core.get_usd_token()
        available_collateral = snx.core.get_available_collateral(usd_token)

    Other methods prepare transactions to create accounts, deposit collateral,
    mint sUSD, etc. and submit them to the user's RPC::

        create_account_tx = snx.core.create_account(submit=True)
        deposit_tx = snx.core.deposit(token_address, amount=100, submit=True)
        mint_tx = snx.core.mint_usd(token_address, amount=50, pool_id=1, submit=True)

    An instance of this module is available as ``snx.core``. If the network has
    no core deployment, ``core_proxy`` is ``None`` and the methods will raise
    an error.

    The following contracts are required:

        - system.CoreProxy
        - system.AccountProxy

    :param Synthetix snx: An instance of the Synthetix class
    :param int default_account_id: The default account ID to use

    :return: An instance of the Core class
    :rtype: Core
    """

    def __init__(self, snx, default_account_id: int = None):
        self.snx = snx
        self.logger = snx.logger
        self.core_proxy = None
        self.account_proxy = None
        self.account_ids = []
        self.default_account_id = default_account_id

        try:
            self.core_proxy = get_contract(snx.contracts, "system", "CoreProxy")[
                "contract"
            ]
            self.account_proxy = get_contract(snx.contracts, "system", "AccountProxy")[
                "contract"
            ]
        except KeyError as e:
            self.logger.info(f"Core is unavailable: {e}")
            return

        try:
            self.get_account_ids(default_account_id=default_account_id)
        except Exception as e:
            self.logger.warning(f"Failed to fetch core accounts: {e}")

    def _submit(self, tx_params, submit: bool, action: str, description: str):
        if not submit:
            return tx_params

        tx_hash = self.snx.execute_transaction(tx_params)
        self.logger.info(description)
        self.logger.info(f"{action} tx: {tx_hash}")
        return tx_hash

    # read
    def get_usd_token(self):
        """Get the address of the USD stablecoin token."""
        usd_token = self.snx.erc7412.call(self.core_proxy, "getUsdToken")
        return self.snx.web3.to_checksum_address(usd_token)

    def get_account_ids(self, address: str = None, default_account_id: int = None):
        """
        Get the core account IDs owned by an address. Account NFTs are counted
        with ``balanceOf``, then every ``tokenOfOwnerByIndex`` is fetched in a
        single multicall.

        :param str address: The address to get accounts for. Uses connected address if not provided.
        :param int default_account_id: The default account ID to set after fetching.

        :return: A list of account IDs owned by the address.
        :rtype: list
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

    def get_available_collateral(self, token_address: str, account_id: int = None):
        """
        Get the undelegated collateral of ``token_address`` available for
        withdrawal from an account.

        :param str token_address: The address of the collateral token.
        :param int account_id: The ID of the account to check. Uses default if not provided.

        :return: The available collateral as an ether value.
        :rtype: float
        """
        if not account_id:
            account_id = self.default_account_id

        available_collateral = self.snx.erc7412.call(
            self.core_proxy,
            "getAccountAvailableCollateral",
            [account_id, token_address],
        )
        return wei_to_ether(available_collateral)

    # write
    def create_account(self, account_id: int = None, submit: bool = False):
        """
        Create a new Synthetix account on the core system. Account creation
        does not read prices, so the transaction is sent directly to the
        ``CoreProxy``.

        :param int account_id: The ID of the new account. If not provided,
            the next available ID will be used.
        :param bool submit: If True, immediately submit the transaction.

        :return: The transaction hash if submitted, else the unsigned transaction data.
        :rtype: str | dict
        """
        tx_args = [account_id] if account_id else []

        tx_params = self.core_proxy.functions.createAccount(*tx_args).build_transaction(
            self.snx._get_tx_params()
        )

        tx_hash = self._submit(
            tx_params, submit, "create_account", f"Creating account for {self.snx.address}"
        )
        if submit:
            # wait for the transaction, then refetch the ids
            self.snx.wait(tx_hash)
            self.get_account_ids()
        return tx_hash

    def deposit(
        self,
        token_address: str,
        amount: float,
        account_id: int = None,
        submit: bool = False,
    ):
        """
        Deposit ``amount`` of ``token_address`` as collateral into an account.
        The token must be enabled as collateral on the core system.

        :param str token_address: The address of the token to deposit.
        :param float amount: The amount of tokens to deposit.
        :param int account_id: The ID of the account to deposit into. Uses default if not provided.
        :param bool submit: If True, immediately submit the transaction.

        :return: The transaction hash if submitted, else the unsigned transaction.
        :rtype: str | dict
        """
        if not account_id:
            account_id = self.default_account_id

        tx_params = self.core_proxy.functions.deposit(
            account_id, token_address, ether_to_wei(amount)
        ).build_transaction(self.snx._get_tx_params())

        return self._submit(
            tx_params,
            submit,
            "deposit",
            f"Depositing {amount} {token_address} for account {account_id}",
        )

    def withdraw(
        self,
        amount: float,
        token_address: str = None,
        account_id: int = None,
        submit: bool = False,
    ):
        """
        Withdraw undelegated collateral from an account. The account must be past
        the withdrawal delay. Withdrawals check collateral prices, so the
        transaction is prepared through the ERC-7412 multicall.

        :param float amount: The amount of tokens to withdraw.
        :param str token_address: The token to withdraw. Defaults to sUSD.
        :param int account_id: The ID of the account to withdraw from. Uses default if not provided.
        :param bool submit: If True, immediately submit the transaction.

        :return: The transaction hash if submitted, else the unsigned transaction.
        :rtype: str | dict
        """
        if not account_id:
            account_id = self.default_account_id

        if not token_address:
            token_address = self.get_usd_token()

        tx_params = self.snx.erc7412.write(
            self.core_proxy,
            "withdraw",
            [account_id, token_address, ether_to_wei(amount)],
        )

        return self._submit(
            tx_params,
            submit,
            "withdraw",
            f"Withdrawing {amount} {token_address} from account {account_id}",
        )

    def delegate_collateral(
        self,
        token_address: str,
        amount: float,
        pool_id: int,
        leverage: float = 1,
        account_id: int = None,
        submit: bool = False,
    ):
        """
        Delegate ``amount`` of ``token_address`` collateral to ``pool_id``.

        :param str token_address: The address of the collateral token to delegate.
        :param float amount: The amount of collateral to delegate.
        :param int pool_id: The ID of the pool to delegate to.
        :param float leverage: The leverage ratio, default 1.
        :param int account_id: The account ID. Uses default if not provided.
        :param bool submit: If True, submit the transaction.

        :return: The transaction hash if submitted, else the unsigned transaction
        :rtype: str | dict
        """
        if not account_id:
            account_id = self.default_account_id

        tx_params = self.snx.erc7412.write(
            self.core_proxy,
            "delegateCollateral",
            [
                account_id,
                pool_id,
                token_address,
                ether_to_wei(amount),
                ether_to_wei(leverage),
            ],
        )

        return self._submit(
            tx_params,
            submit,
            "delegate",
            f"Delegating {amount} {token_address} to pool id {pool_id} for account {account_id}",
        )

    def mint_usd(
        self,
        token_address: str,
        amount: float,
        pool_id: int,
        account_id: int = None,
        submit: bool = False,
    ):
        """
        Mint ``amount`` of sUSD against ``token_address`` collateral delegated to
        ``pool_id``.

        :param str token_address: The collateral token address.
        :param float amount: The amount of sUSD to mint.
        :param int pool_id: The ID of the pool to mint against.
        :param int account_id: The account ID. Uses default if not provided.
        :param bool submit: If True, submit the transaction.

        :return: The transaction hash if submitted, else the unsigned transaction
        :rtype: str | dict
        """
        if not account_id:
            account_id = self.default_account_id

        tx_params = self.snx.erc7412.write(
            self.core_proxy,
            "mintUsd",
            [account_id, pool_id, token_address, ether_to_wei(amount)],
        )

        return self._submit(
            tx_params,
            submit,
            "mint",
            f"Minting {amount} sUSD with {token_address} collateral against pool id {pool_id} for account {account_id}",
        )
