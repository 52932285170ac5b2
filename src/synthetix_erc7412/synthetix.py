import argparse
import logging
from web3 import Web3
from web3.constants import ADDRESS_ZERO
from web3.types import TxParams
from .constants import (
    DEFAULT_FEE_PER_UPDATE,
    DEFAULT_GAS_BUFFER,
    DEFAULT_GAS_MULTIPLIER,
    DEFAULT_PRICE_SERVICE_ENDPOINT,
    DEFAULT_PRICE_SERVICE_TIMEOUT,
    DEFAULT_PYTH_CACHE_TTL,
    DEFAULT_REFERRER,
    DEFAULT_SLIPPAGE,
    DEFAULT_TRACKING_CODE,
)
from .utils import wei_to_ether, ether_to_wei
from .utils.multicall import ERC7412Multicall, TrustedMulticallForwarder
from .contracts import load_contracts, get_contract
from .pyth import Pyth
from .core import Core
from .perps import Perps
from .spot import Spot


def setup_logging(debug: bool, verbose: int):
    if debug or verbose >= 2:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    # set up logging
    logger = logging.getLogger(__name__)
    logger.setLevel(log_level)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))

    if not logger.handlers:
        logger.addHandler(handler)
    return logger


def parse_args():
    parser = argparse.ArgumentParser(description="Synthetix ERC-7412 client")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    # ignore the arguments of the script embedding the client
    args, _ = parser.parse_known_args()
    return args


def resolve_signer(web3, address, private_key, rpc_signers, logger):
    """
    Pick the address that signs transactions. An unset address uses the first
    RPC signer or the private key, a provided address must match one of them
    to be used for signing.

    :param Web3 web3: The web3 instance.
    :param str address: The provided address, ``None`` or ``ADDRESS_ZERO`` if unset.
    :param str private_key: The private key, if any.
    :param list rpc_signers: Accounts unlocked on the RPC.
    :param logging.Logger logger: Logger for the chosen signer.
    :return: The signer address.
    :rtype: str
    """
    if address is None:
        address = ADDRESS_ZERO

    if address == ADDRESS_ZERO and len(rpc_signers) > 0:
        address = rpc_signers[0]
        logger.info(f"Using RPC signer: {address}")
    elif address in rpc_signers:
        logger.info(f"Using RPC signer: {address}")
    elif private_key is not None:
        key_address = web3.eth.account.from_key(private_key).address
        if address != ADDRESS_ZERO and key_address != address:
            raise ValueError("Private key does not match the provided address")
        address = key_address
        logger.info(f"Using private key signer: {address}")
    else:
        logger.info(f"Using provided address without private key: {address}")
    return address


class Synthetix:
    """
    The main class for interacting with the Synthetix protocol. The class
    requires a provider RPC endpoint and a wallet address::

            snx = Synthetix(
                provider_rpc='https://base-mainnet.infura.io/v3/...',
                network_id=8453,
                address='0x12345...'
            )

    The class can be initialized with a private key to allow for transactions
    to be signed and sent to your RPC::

                snx = Synthetix(
                    provider_rpc='https://base-mainnet.infura.io/v3/...',
                    network_id=8453,
                    address='0x12345...',
                    private_key='0xabcde...'
                )

    Contract calls that depend on Pyth prices go through ``snx.erc7412``, which
    fulfills ERC-7412 oracle requests before returning results or transactions.

    :param str provider_rpc: An RPC endpoint to use for the provider that interacts
        with the smart contracts. This must match the ``network_id``.
    :param str ipfs_gateway: An IPFS gateway to use for fetching deployments from Cannon.
    :param str address: Wallet address to use as a default. If a private key is
        specified, this address will be used to sign transactions.
    :param str private_key: Private key of the provided wallet address. If specified,
        the wallet will be enabled to sign and submit transactions.
    :param int network_id: Network ID for the chain to connect to. This must match
        the chain ID of the RPC endpoint.
    :param int core_account_id: A default ``account_id`` for core transactions.
    :param int perps_account_id: A default ``account_id`` for perps transactions.
    :param list perps_disabled_markets: A list of market ids to disable for perps.
    :param str tracking_code: Set a tracking code for trades.
    :param str referrer: Set a referrer address for trades.
    :param float max_price_impact: Max price impact setting for trades,
        specified as a percentage.
    :param bool use_estimate_gas: Use estimate gas for transactions. If false,
        it is assumed you will add a gas limit to all transactions.
    :param dict cannon_config: A cannon deployment to load, as ``{"ipfs_hash": ...}``.
    :param dict contracts: Contract definitions as nested ``{"address", "abi"}``
        mappings, overriding the loaded deployments.
    :param str price_service_endpoint: Endpoint for a Pyth price service. If
        not specified, a default endpoint is used.
    :param int pyth_cache_ttl: Time to live for Pyth cache in seconds.
    :param float gas_multiplier: Multiplier for gas estimates of transactions
        sent without a gas limit.
    :param int fee_per_update: Value sent per price update when fulfilling oracle
        requests that don't specify a fee.
    :param bool is_fork: Set to true if the chain is a fork. Price data is then
        requested at the block timestamp.
    :param dict request_kwargs: Keyword arguments for the HTTP provider.

    :return: Synthetix class instance
    :rtype: Synthetix
    """

    def __init__(
        self,
        provider_rpc: str,
        ipfs_gateway: str = "https://ipfs.synthetix.io/ipfs/",
        address: str = ADDRESS_ZERO,
        private_key: str = None,
        network_id: int = None,
        core_account_id: int = None,
        perps_account_id: int = None,
        perps_disabled_markets: list = None,
        tracking_code: str = DEFAULT_TRACKING_CODE,
        referrer: str = DEFAULT_REFERRER,
        max_price_impact: float = DEFAULT_SLIPPAGE,
        use_estimate_gas: bool = True,
        cannon_config: dict = None,
        contracts: dict = None,
        price_service_endpoint: str = None,
        pyth_cache_ttl: int = DEFAULT_PYTH_CACHE_TTL,
        gas_multiplier: float = DEFAULT_GAS_MULTIPLIER,
        fee_per_update: int = DEFAULT_FEE_PER_UPDATE,
        is_fork: bool = False,
        request_kwargs: dict = None,
    ):
        args = parse_args()
        self.logger = setup_logging(args.debug, args.verbose)

        # init account variables
        self.private_key = private_key
        self.use_estimate_gas = use_estimate_gas
        self.cannon_config = cannon_config
        self.contract_overrides = contracts
        self.provider_rpc = provider_rpc
        self.ipfs_gateway = ipfs_gateway
        self.gas_multiplier = gas_multiplier
        self.max_price_impact = max_price_impact
        self.tracking_code = tracking_code
        self.referrer = referrer
        self.is_fork = is_fork

        # init chain provider
        if provider_rpc.startswith("http"):
            web3 = Web3(
                Web3.HTTPProvider(self.provider_rpc, request_kwargs=request_kwargs)
            )
        elif provider_rpc.startswith("ws"):
            web3 = Web3(Web3.LegacyWebSocketProvider(self.provider_rpc))
        elif provider_rpc.endswith("ipc"):
            web3 = Web3(Web3.IPCProvider(self.provider_rpc))
        else:
            raise ValueError("Provider RPC endpoint is invalid")

        # check for RPC signers
        try:
            self.rpc_signers = web3.eth.accounts
        except Exception as e:
            self.logger.warning(f"Error getting RPC signers: {e}")
            self.rpc_signers = []

        self.address = resolve_signer(
            web3, address, self.private_key, self.rpc_signers, self.logger
        )

        # check network id
        if network_id is None:
            network_id = web3.eth.chain_id
            self.logger.info(f"Setting network_id from RPC chain_id: {network_id}")
        elif web3.eth.chain_id != int(network_id):
            raise ValueError("The RPC `chain_id` must match the stored `network_id`")

        # set nonce
        self.nonce = web3.eth.get_transaction_count(self.address)
        self.web3 = web3
        self.network_id = int(network_id)

        # init contracts
        self.contracts = load_contracts(self)
        self.susd_token, self.multicall = self._load_contracts()

        # init pyth
        if not price_service_endpoint:
            price_service_endpoint = DEFAULT_PRICE_SERVICE_ENDPOINT

        self.pyth = Pyth(
            self.logger,
            cache_ttl=pyth_cache_ttl,
            price_service_endpoint=price_service_endpoint,
            timeout=DEFAULT_PRICE_SERVICE_TIMEOUT,
        )

        # init the erc7412 multicall
        self.erc7412 = ERC7412Multicall(
            TrustedMulticallForwarder(self.multicall),
            self.pyth,
            logger=self.logger,
            fee_per_update=fee_per_update,
            gas_buffer=DEFAULT_GAS_BUFFER,
            get_tx_params=self._get_tx_params,
            is_fork=is_fork,
        )

        self.core = Core(self, core_account_id)
        self.spot = Spot(self)
        self.perps = Perps(self, perps_account_id, perps_disabled_markets)

    def _load_contracts(self):
        """
        Sets up the contracts used by the base Synthetix object:

        * ``USDProxy`` (the V3 sUSD token), if deployed
        * ``TrustedMulticallForwarder``, from the deployment or the common address

        :return: web3 contracts
        :rtype: [contract | None, contract]
        """
        try:
            susd_token = get_contract(self.contracts, "system", "USDProxy")["contract"]
        except KeyError:
            susd_token = None

        try:
            mc_definition = get_contract(
                self.contracts,
                "system",
                "trusted_multicall_forwarder",
                "TrustedMulticallForwarder",
            )
        except KeyError:
            self.logger.info("Using the common TrustedMulticallForwarder deployment")
            mc_definition = get_contract(
                self.contracts, "common", "TrustedMulticallForwarder"
            )

        return susd_token, mc_definition["contract"]

    def _get_tx_params(self, value=0, to=None) -> TxParams:
        """
        A helper function to prepare transaction parameters. This function
        will set up the transaction based on the parameters at initialization,
        but leave the ``data`` parameter empty.

        :param int value: value to send with transaction
        :param str | None to: address to send transaction to
        :return: A prepared transaction without the ``data`` parameter
        :rtype: TxParams
        """
        params: TxParams = {
            "from": self.address,
            "chainId": self.network_id,
            "value": value,
            "nonce": self.nonce,
        }
        if to is not None:
            params["to"] = to
        return params

    def wait(self, tx_hash: str, timeout: int = 120):
        """
        Wait for a transaction to be confirmed and return the receipt.
        The function will throw an error if the timeout is exceeded.

        :param str tx_hash: transaction hash to wait for
        :param int timeout: timeout in seconds
        :return: A transaction receipt
        :rtype: dict
        """
        return self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)

    def _send_transaction(self, tx_data: dict):
        """
        Send a prepared transaction to the connected RPC. If the RPC has a signer for
        the account in the `from` field, the transaction is sent directly to the RPC.
        For other addresses, if a private key is provided, the transaction is signed
        and sent to the RPC. Otherwise, this function will raise an error.

        The nonce is advanced only after the RPC accepted the transaction.

        :param dict tx_data: transaction data
        :return: A transaction hash
        :rtype: str
        """
        is_rpc_signer = tx_data["from"] in self.rpc_signers
        if not is_rpc_signer and self.private_key is None:
            raise ValueError("No private key specified.")

        if is_rpc_signer:
            tx_hash = self.web3.eth.send_transaction(tx_data)
        else:
            signed_txn = self.web3.eth.account.sign_transaction(
                tx_data, private_key=self.private_key
            )
            tx_hash = self.web3.eth.send_raw_transaction(signed_txn.raw_transaction)

        self.nonce += 1
        return self.web3.to_hex(tx_hash)

    def execute_transaction(self, tx_data: dict, reset_nonce: bool = False):
        """
        Execute a provided transaction. This function will be signed with the provided
        private key and submitted to the connected RPC. The ``Synthetix`` object tracks
        the nonce internally, and will handle estimating gas limits if they are not
        provided.

        :param dict tx_data: transaction data
        :param bool reset_nonce: call the RPC to get the current nonce, otherwise use the
            stored nonce
        :return: A transaction hash
        :rtype: str
        """
        if "gas" not in tx_data:
            if self.use_estimate_gas:
                tx_data["gas"] = int(
                    self.web3.eth.estimate_gas(tx_data) * self.gas_multiplier
                )
            else:
                tx_data["gas"] = 1500000

        if reset_nonce:
            self.nonce = self.web3.eth.get_transaction_count(self.address)
            tx_data["nonce"] = self.nonce

        try:
            self.logger.debug(f"Tx data: {tx_data}")
            return self._send_transaction(tx_data)
        except ValueError as e:
            if "nonce too low" in str(e) and not reset_nonce:
                self.logger.warning("Nonce too low, resetting nonce and retrying.")
                return self.execute_transaction(tx_data, reset_nonce=True)
            raise

    def get_susd_balance(self, address: str = None) -> dict:
        """
        Gets current sUSD balance in wallet.

        :param str address: address to check balances for
        :return: A dictionary with the sUSD balance
        :rtype: dict
        """
        if not address:
            address = self.address

        if self.susd_token is None:
            return {"balance": 0}

        balance = self.susd_token.functions.balanceOf(address).call()
        return {"balance": wei_to_ether(balance)}

    # transactions
    def approve(
        self,
        token_address: str,
        target_address: str,
        amount: float = None,
        submit: bool = False,
    ):
        """
        Approve an address to spend a specified ERC20 token. Specify the amount
        as an ether value, otherwise it will default to the maximum amount::

            snx.approve(
                snx.susd_token.address,
                snx.perps.market_proxy.address,
                amount=1000
            )

        :param str token_address: address of the token to approve
        :param str target_address: address to approve to spend the token
        :param float amount: amount of the token to approve
        :param bool submit: submit the transaction
        :return: If ``submit``, returns a transaction hash. Otherwise, returns
            the transaction parameters.
        :rtype: str | dict
        """
        amount = 2**256 - 1 if amount is None else ether_to_wei(amount)
        token_contract = self.web3.eth.contract(
            address=token_address, abi=self.contracts["common"]["ERC20"]["abi"]
        )

        # reset nonce on internal transactions
        self.nonce = self.web3.eth.get_transaction_count(self.address)
        tx_params = self._get_tx_params()

        tx_params = token_contract.functions.approve(
            target_address, amount
        ).build_transaction(tx_params)

        if submit:
            tx_hash = self.execute_transaction(tx_params)
            self.logger.info(
                f"Approving {target_address} to spend {wei_to_ether(amount)} {token_address} for {self.address}"
            )
            self.logger.info(f"approve tx: {tx_hash}")
            return tx_hash
        return tx_params

    def allowance(
        self, token_address: str, spender_address: str, owner_address: str = None
    ) -> float:
        """
        Get the allowance for a spender to spend a specified ERC20 token for an owner.

        :param str token_address: address of the token
        :param str spender_address: address of the spender
        :param str owner_address: address of the token owner. If not specified, the default
            address is used.
        :return: The allowance as an ether value
        :rtype: float
        """
        if not owner_address:
            owner_address = self.address

        token_contract = self.web3.eth.contract(
            address=token_address, abi=self.contracts["common"]["ERC20"]["abi"]
        )
        allowance = token_contract.functions.allowance(
            owner_address, spender_address
        ).call()
        return wei_to_ether(allowance)
