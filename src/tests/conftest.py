import os
import logging
import pytest
from dotenv import load_dotenv
from eth_abi import decode, encode
from eth_utils import decode_hex, encode_hex
from web3 import Web3
from web3.exceptions import ContractCustomError
from synthetix_erc7412.utils.erc7412 import (
    SELECTOR_ERRORS,
    SELECTOR_ORACLE_DATA_REQUIRED,
    SELECTOR_ORACLE_DATA_REQUIRED_WITH_FEE,
)
from synthetix_erc7412.utils.multicall import (
    CallResult,
    ERC7412Multicall,
    FULFILL_ORACLE_QUERY_SELECTOR,
)

load_dotenv()

# constants
SIGNER_ADDRESS = "0x0000000000000000000000000000000000000001"
MARKET_ADDRESS = "0x0000000000000000000000000000000000000100"
ORACLE_ADDRESS = "0x0000000000000000000000000000000000007412"
FORWARDER_ADDRESS = "0x0000000000000000000000000000000000001234"

ETH_FEED_ID = "0x" + "11" * 32
BTC_FEED_ID = "0x" + "22" * 32
SNX_FEED_ID = "0x" + "33" * 32

MARKET_ABI = [
    {
        "type": "function",
        "name": "getMarketSummary",
        "stateMutability": "view",
        "inputs": [{"name": "marketId", "type": "uint128"}],
        "outputs": [
            {"name": "skew", "type": "int256"},
            {"name": "size", "type": "uint256"},
            {"name": "maxOpenInterest", "type": "uint256"},
            {"name": "currentFundingRate", "type": "int256"},
            {"name": "currentFundingVelocity", "type": "int256"},
            {"name": "indexPrice", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "interestRate",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint128"}],
    },
    {
        "type": "function",
        "name": "canLiquidate",
        "stateMutability": "view",
        "inputs": [{"name": "accountId", "type": "uint128"}],
        "outputs": [{"name": "isEligible", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "liquidate",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "accountId", "type": "uint128"}],
        "outputs": [{"name": "liquidationReward", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "settleOrder",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "accountId", "type": "uint128"}],
        "outputs": [],
    },
]

SUMMARY_TYPES = ["int256", "uint256", "uint256", "int256", "int256", "uint256"]


# Add a command-line option to pytest to accept network_id
def pytest_addoption(parser):
    parser.addoption(
        "--network_id", action="store", help="Network ID for testing", default=None
    )


class FakeChain:
    """
    Stands in for the multicall forwarder. Registered calls revert with
    ``OracleDataRequired`` until a fulfillment call in the same batch updates
    their feeds. Every batch is recorded.
    """

    oracle_address = ORACLE_ADDRESS

    def __init__(self, address=FORWARDER_ADDRESS, timestamp=1700000000, gas=100000):
        self.address = address
        self.timestamp = timestamp
        self.gas = gas
        self.bundle_errors = False
        self.responses = {}
        self.batches = []
        self.tx_params = []
        self.fulfillments = []
        self.estimates = 0

    @staticmethod
    def summary(index_price, skew=0, size=0):
        """ABI encoded return data of getMarketSummary"""
        return encode(
            SUMMARY_TYPES, [skew, size, 10**24, 0, 0, Web3.to_wei(index_price, "ether")]
        )

    # errors
    @staticmethod
    def oracle_error(feed_ids, staleness=60, update_type=1, fee=None, address=ORACLE_ADDRESS):
        if update_type == 2:
            query = encode(
                ["uint8", "uint64", "bytes32"], [2, staleness, decode_hex(feed_ids[0])]
            )
        else:
            query = encode(
                ["uint8", "uint64", "bytes32[]"],
                [update_type, staleness, [decode_hex(f) for f in feed_ids]],
            )

        if fee is None:
            return decode_hex(SELECTOR_ORACLE_DATA_REQUIRED) + encode(
                ["address", "bytes"], [address, query]
            )
        return decode_hex(SELECTOR_ORACLE_DATA_REQUIRED_WITH_FEE) + encode(
            ["address", "bytes", "uint256"], [address, query, fee]
        )

    @staticmethod
    def errors(payloads):
        return decode_hex(SELECTOR_ERRORS) + encode(["bytes[]"], [payloads])

    @staticmethod
    def revert(error_data):
        return ContractCustomError("execution reverted", data=encode_hex(error_data))

    # setup
    def respond(
        self,
        call,
        return_data=b"",
        feeds=(),
        staleness=60,
        update_type=1,
        fee=None,
        error=None,
        oracle=ORACLE_ADDRESS,
    ):
        """Register the return data of a call and the feeds it needs from an oracle, or a fixed error"""
        self.responses[bytes(call.data)] = {
            "oracle": oracle,
            "return_data": return_data,
            "feeds": list(feeds),
            "staleness": staleness,
            "update_type": update_type,
            "fee": fee,
            "error": error,
        }

    # execution
    def _execute(self, calls):
        fresh = set()
        results = []
        stale_errors = []
        for call in calls:
            if call.data[:4] == FULFILL_ORACLE_QUERY_SELECTOR:
                (payload,) = decode(["bytes"], call.data[4:])
                update_type, staleness, feed_ids, updates = decode(
                    ["uint8", "uint64", "bytes32[]", "bytes[]"], payload
                )
                self.fulfillments.append(
                    {
                        "target": call.target,
                        "update_type": update_type,
                        "staleness": staleness,
                        "feed_ids": [encode_hex(f) for f in feed_ids],
                        "updates": list(updates),
                        "value": call.value,
                    }
                )
                fresh.update((call.target, encode_hex(f)) for f in feed_ids)
                results.append(CallResult(True, b""))
                continue

            response = self.responses[bytes(call.data)]
            error = response["error"]
            stale = [
                f for f in response["feeds"] if (response["oracle"], f) not in fresh
            ]
            if error is None and len(stale) > 0:
                error = self.oracle_error(
                    stale,
                    staleness=response["staleness"],
                    update_type=response["update_type"],
                    fee=response["fee"],
                    address=response["oracle"],
                )

            if error is None:
                results.append(CallResult(True, response["return_data"]))
            elif not call.require_success:
                results.append(CallResult(False, error))
            elif self.bundle_errors:
                stale_errors.append(error)
                results.append(CallResult(False, error))
            else:
                raise self.revert(error)

        if len(stale_errors) > 0:
            raise self.revert(self.errors(stale_errors))
        return results

    def aggregate(self, calls, tx_params=None, block="latest"):
        self.batches.append(list(calls))
        self.tx_params.append(tx_params)
        return self._execute(calls)

    def build_transaction(self, calls, tx_params):
        self.batches.append(list(calls))
        self.tx_params.append(tx_params)
        self._execute(calls)
        self.estimates += 1
        return {**tx_params, "to": self.address, "data": "0x", "gas": self.gas}

    def get_block_timestamp(self, block="latest"):
        return self.timestamp


class FakePyth:
    """Returns one update per feed id and records every request"""

    def __init__(self):
        self.requests = []
        self.error = None
        self.price_feed_ids = {}

    def get_feeds_data(self, feed_ids, publish_time=None):
        self.requests.append((list(feed_ids), publish_time))
        if self.error is not None:
            raise self.error
        return [f"update:{feed_id}".encode() for feed_id in feed_ids]


# fixtures
@pytest.fixture(scope="module")
def logger(pytestconfig):
    logg = logging.getLogger(__name__)
    if not logg.hasHandlers():
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(name)s - %(levelname)s - %(message)s")
        )
        logg.addHandler(handler)
    return logg


@pytest.fixture(scope="module")
def snx(pytestconfig):
    from synthetix_erc7412 import Synthetix

    rpc = os.environ.get("PROVIDER_RPC")
    if not rpc:
        pytest.skip("PROVIDER_RPC is not set")

    network_id = pytestconfig.getoption("network_id") or os.environ.get("NETWORK_ID")
    cannon_hash = os.environ.get("CANNON_IPFS_HASH")
    snx = Synthetix(
        provider_rpc=rpc,
        address=os.environ.get("ADDRESS", SIGNER_ADDRESS),
        private_key=os.environ.get("PRIVATE_KEY"),
        network_id=int(network_id) if network_id else None,
        cannon_config={"ipfs_hash": cannon_hash} if cannon_hash else None,
    )
    snx.logger.info(f"Using network ID {snx.network_id}")
    return snx


@pytest.fixture
def market_proxy():
    return Web3().eth.contract(address=MARKET_ADDRESS, abi=MARKET_ABI)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def pyth():
    return FakePyth()


@pytest.fixture
def erc7412(chain, pyth, logger):
    def get_tx_params(value=0):
        return {"from": SIGNER_ADDRESS, "chainId": 8453, "value": value, "nonce": 7}

    return ERC7412Multicall(chain, pyth, logger=logger, get_tx_params=get_tx_params)


@pytest.fixture
def feed_ids():
    return {"ETH": ETH_FEED_ID, "BTC": BTC_FEED_ID, "SNX": SNX_FEED_ID}
