"""
ERC-7412 multicall engine.

Contract calls are executed through the ``TrustedMulticallForwarder`` using
``aggregate3Value``. When a call reverts because an oracle needs fresh data,
the engine fetches the data from Pyth, prepends a ``fulfillOracleQuery`` call
ahead of the calls it unblocks, and tries again::

    value = snx.erc7412.call(snx.perps.market_proxy, "getMarketSummary", 100)
    values = snx.erc7412.multicall(snx.perps.market_proxy, "getMarketSummary", [100, 200])
    tx_params = snx.erc7412.write(snx.core.core_proxy, "withdraw", [1, token, amount])

The loop has no retry limit. Each retry adds the calls that resolve one revert,
so it ends once every required feed is fresh or a non-oracle error is raised.
Callers that talk to unreliable services should apply their own timeout.
"""

import logging
import math
from typing import NamedTuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import decode_hex, function_signature_to_4byte_selector, to_checksum_address
from eth_utils.abi import get_abi_output_types
from web3.exceptions import ContractLogicError

from ..constants import DEFAULT_FEE_PER_UPDATE, DEFAULT_GAS_BUFFER
from ..exceptions import (
    ContractCallError,
    DecodeError,
    MalformedOracleError,
    OracleDataRequired,
)
from .erc7412 import UPDATE_TYPE_LATEST, UPDATE_TYPE_PUBLISH_TIME, raise_for_revert


# constants
FULFILL_ORACLE_QUERY_SELECTOR = function_signature_to_4byte_selector(
    "fulfillOracleQuery(bytes)"
)
FORK_PUBLISH_TIME_OFFSET = 60


class Call(NamedTuple):
    """A single call for ``aggregate3Value``, in the order of its struct fields."""

    target: str
    require_success: bool
    value: int
    data: bytes


class CallResult(NamedTuple):
    success: bool
    return_data: bytes


def format_args(args):
    """Wrap a single argument so it can be passed as a list of arguments"""
    return tuple(args) if isinstance(args, (list, tuple)) else (args,)


def encode_call(contract, function_name, args=(), value=0, require_success=True):
    """
    Encode a contract function call into a ``Call`` for the multicall forwarder.

    :param web3.contract.Contract contract: The contract to call.
    :param str function_name: The name of the function.
    :param args: The function arguments. A single argument does not need to be wrapped.
    :param int value: Native token value to send with the call.
    :param bool require_success: If ``True``, a failure reverts the whole batch.
    :return: The encoded call.
    :rtype: Call
    """
    data = contract.encode_abi(function_name, args=format_args(args))
    return Call(contract.address, require_success, value, decode_hex(data))


def decode_result(contract, function_name, result):
    """
    Decode the return data of a function call. A single output is returned
    unwrapped, multiple outputs are returned as a tuple.

    :param web3.contract.Contract contract: The contract that was called.
    :param str function_name: The name of the function.
    :param bytes result: The raw return data.
    :return: The decoded output.
    """
    func_abi = contract.get_function_by_name(function_name).abi
    output_types = get_abi_output_types(func_abi)

    result = bytes(result)
    if len(result) % 32 != 0:
        raise DecodeError(
            function_name, f"{len(result)} bytes is not an ABI encoded payload"
        )

    try:
        decoded_result = decode(output_types, result)
    except DecodingError as err:
        raise DecodeError(function_name, str(err)) from err

    if len(decoded_result) == 0:
        return None
    return decoded_result if len(decoded_result) > 1 else decoded_result[0]


def make_pyth_fulfillment_request(
    address,
    update_type,
    feed_ids,
    price_update_data,
    staleness_tolerance,
    fee=0,
    fee_per_update=DEFAULT_FEE_PER_UPDATE,
    require_success=True,
):
    """
    Build a ``fulfillOracleQuery`` call for the Pyth ERC-7412 wrapper. The value
    sent is the fee requested by the oracle error, or ``fee_per_update`` for each
    price update item.

    :param str address: The oracle contract address.
    :param int update_type: The Pyth update type.
    :param [str] feed_ids: The feed ids being updated.
    :param [bytes] price_update_data: Price update data, one item per feed id.
    :param int staleness_tolerance: Staleness tolerance, or publish time for type 2.
    :param int fee: The fee requested by the oracle error.
    :param int fee_per_update: The value sent per price update when no fee is requested.
    :param bool require_success: If ``True``, a failure reverts the whole batch.
    :return: The fulfillment call.
    :rtype: Call
    """
    raw_feed_ids = [
        decode_hex(feed_id) if isinstance(feed_id, str) else feed_id
        for feed_id in feed_ids
    ]
    encoded_args = encode(
        ["uint8", "uint64", "bytes32[]", "bytes[]"],
        [update_type, staleness_tolerance, raw_feed_ids, list(price_update_data)],
    )
    data = FULFILL_ORACLE_QUERY_SELECTOR + encode(["bytes"], [encoded_args])

    value = fee if fee > 0 else len(price_update_data) * fee_per_update
    return Call(to_checksum_address(address), require_success, value, data)


def insert_fulfillment_calls(calls, fulfillment_calls, num_calls):
    """
    Insert fulfillment calls directly ahead of the last ``num_calls`` calls, after
    any calls that were already prepended.
    """
    index = len(calls) - num_calls
    return calls[:index] + list(fulfillment_calls) + calls[index:]


def get_revert_data(error) -> bytes:
    """Extract the raw revert payload from a web3 contract error"""
    data = getattr(error, "data", None)
    if isinstance(data, str):
        return decode_hex(data)
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    return b""


class TrustedMulticallForwarder:
    """
    Binding for the ``TrustedMulticallForwarder`` contract. Sub-calls carry their
    own value and return ``(success, returnData)`` pairs in call order.

    :param web3.contract.Contract contract: The forwarder contract.
    """

    def __init__(self, contract):
        self.contract = contract
        self.address = contract.address

    def aggregate(self, calls, tx_params=None, block="latest"):
        results = self.contract.functions.aggregate3Value(
            [tuple(call) for call in calls]
        ).call(tx_params, block_identifier=block)
        return [CallResult(success, bytes(data)) for success, data in results]

    def build_transaction(self, calls, tx_params):
        """Build the transaction, estimating its gas limit"""
        return self.contract.functions.aggregate3Value(
            [tuple(call) for call in calls]
        ).build_transaction(tx_params)

    def get_block_timestamp(self, block="latest"):
        return self.contract.w3.eth.get_block(block).timestamp


class ERC7412Multicall:
    """
    Executes contract calls through the multicall forwarder, fulfilling
    ERC-7412 oracle requests as they are raised. An instance is available as
    ``snx.erc7412``.

    The engine only reads its collaborators, so independent operations can run
    concurrently against the same instance.

    :param TrustedMulticallForwarder forwarder: The multicall forwarder.
    :param Pyth pyth: The price service used to fetch price update data.
    :param logging.Logger logger: Logger for retries and failures.
    :param int fee_per_update: Value sent per price update item.
    :param float gas_buffer: Multiplier applied to gas estimates for writes.
    :param callable get_tx_params: Returns base transaction params for a value.
    :param bool is_fork: Fetch prices at the latest block time instead of the latest price.
    :return: An ERC7412Multicall instance.
    :rtype: ERC7412Multicall
    """

    def __init__(
        self,
        forwarder,
        pyth,
        logger: logging.Logger = None,
        fee_per_update: int = DEFAULT_FEE_PER_UPDATE,
        gas_buffer: float = DEFAULT_GAS_BUFFER,
        get_tx_params=None,
        is_fork: bool = False,
    ):
        self.forwarder = forwarder
        self.pyth = pyth
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.fee_per_update = fee_per_update
        self.gas_buffer = gas_buffer
        self.get_tx_params = get_tx_params
        self.is_fork = is_fork

    def _tx_params(self, value=0):
        params = dict(self.get_tx_params(value=value)) if self.get_tx_params else {}
        params["value"] = value
        return params

    def fulfillment_calls(self, requests):
        """
        Fetch price update data for aggregated oracle requests and build the
        fulfillment calls. Latest price requests share a single call per oracle,
        while each publish time request gets its own.

        :param ERC7412Requests requests: The aggregated requests.
        :return: Fulfillment calls in execution order.
        :rtype: [Call]
        """
        calls = []

        publish_time = None
        if self.is_fork and requests.has_latest():
            # avoid providing "future" prices to a fork
            publish_time = (
                self.forwarder.get_block_timestamp() - FORK_PUBLISH_TIME_OFFSET
            )

        for r in requests.pyth_latest.values():
            price_update_data = self.pyth.get_feeds_data(
                r.feed_ids, publish_time=publish_time
            )
            calls.append(
                make_pyth_fulfillment_request(
                    r.oracle_address,
                    UPDATE_TYPE_LATEST,
                    r.feed_ids,
                    price_update_data,
                    r.staleness_tolerance,
                    fee=r.fee,
                    fee_per_update=self.fee_per_update,
                )
            )

        for r in requests.pyth_vaa:
            price_update_data = self.pyth.get_feeds_data(
                r.feed_ids, publish_time=r.publish_time
            )
            calls.append(
                make_pyth_fulfillment_request(
                    r.oracle_address,
                    UPDATE_TYPE_PUBLISH_TIME,
                    r.feed_ids,
                    price_update_data,
                    r.publish_time,
                    fee=r.fee,
                    fee_per_update=self.fee_per_update,
                )
            )

        return calls

    def _handle_revert(self, revert_data, calls, num_calls):
        """Return the calls to retry with, or raise if the revert can't be fulfilled"""
        try:
            raise_for_revert(revert_data)
        except OracleDataRequired as err:
            fulfillment_calls = self.fulfillment_calls(err.requests)
            self.logger.debug(
                f"Oracle data required for {len(err.requests.feed_ids())} feeds, "
                f"retrying with {len(fulfillment_calls)} fulfillment calls"
            )
            return insert_fulfillment_calls(calls, fulfillment_calls, num_calls)
        except (ContractCallError, MalformedOracleError) as err:
            self.logger.error(f"Error is not related to oracle data: {err}")
            raise

    def _aggregate(self, calls, num_calls, block):
        """Run the batch until every oracle error is fulfilled, returning the last ``num_calls`` results"""
        while True:
            total_value = sum(call.value for call in calls)

            try:
                results = self.forwarder.aggregate(
                    calls, self._tx_params(total_value), block
                )
            except ContractLogicError as err:
                self.logger.debug(f"Simulation failed, decoding the error {err}")
                calls = self._handle_revert(get_revert_data(err), calls, num_calls)
                continue

            if len(results) != len(calls):
                raise ContractCallError(
                    message=f"Multicall returned {len(results)} results for {len(calls)} calls"
                )

            these_results = results[-num_calls:]
            failed = [result for result in these_results if not result.success]
            if len(failed) > 0:
                self.logger.debug("Call failed inside the multicall, decoding the error")
                calls = self._handle_revert(failed[0].return_data, calls, num_calls)
                continue

            return these_results

    def call(self, contract, function_name, args=(), calls=None, block="latest"):
        """
        Call a read function, fulfilling any oracle data it requires.

        :param web3.contract.Contract contract: The contract to call.
        :param str function_name: The name of the function.
        :param args: The function arguments. A single argument does not need to be wrapped.
        :param [Call] calls: Calls to execute before this one, such as price updates.
        :param str | int block: The block to call at.
        :return: The decoded result.
        """
        calls = list(calls) if calls else []
        calls = calls + [encode_call(contract, function_name, args)]

        results = self._aggregate(calls, 1, block)
        return decode_result(contract, function_name, results[-1].return_data)

    def multicall(self, contract, function_name, args_list, calls=None, block="latest"):
        """
        Call a read function once for each set of arguments in a single multicall,
        fulfilling any oracle data they require.

        :param web3.contract.Contract contract: The contract to call.
        :param str function_name: The name of the function.
        :param list args_list: Arguments for each call. Single arguments don't need to be wrapped.
        :param [Call] calls: Calls to execute before these, such as price updates.
        :param str | int block: The block to call at.
        :return: The decoded results in the order of ``args_list``.
        :rtype: list
        """
        calls = list(calls) if calls else []
        num_prepended_calls = len(calls)

        these_calls = [
            encode_call(contract, function_name, args) for args in args_list
        ]
        calls = calls + these_calls
        num_calls = len(calls) - num_prepended_calls
        if num_calls == 0:
            return []

        results = self._aggregate(calls, num_calls, block)
        return [
            decode_result(contract, function_name, result.return_data)
            for result in results
        ]

    def write(self, contract, function_name, args=(), tx_params=None, calls=None):
        """
        Prepare a transaction calling a write function through the multicall
        forwarder. The transaction is simulated while estimating gas, and oracle
        data is fulfilled until the simulation passes. The gas limit is buffered
        by ``gas_buffer``.

        :param web3.contract.Contract contract: The contract to call.
        :param str function_name: The name of the function.
        :param args: The function arguments.
        :param dict tx_params: Transaction param overrides. ``value`` is sent with this call.
        :param [Call] calls: Calls to execute before this one, such as price updates.
        :return: The prepared transaction params.
        :rtype: dict
        """
        tx_params = dict(tx_params) if tx_params else {}
        tx_params.pop("gas", None)

        calls = list(calls) if calls else []
        calls = calls + [
            encode_call(
                contract, function_name, args, value=tx_params.get("value", 0)
            )
        ]

        while True:
            total_value = sum(call.value for call in calls)
            params = {**self._tx_params(total_value), **tx_params, "value": total_value}

            try:
                tx = self.forwarder.build_transaction(calls, params)
            except ContractLogicError as err:
                self.logger.debug(f"Simulation failed, decoding the error {err}")
                calls = self._handle_revert(get_revert_data(err), calls, 1)
                continue

            tx["gas"] = math.ceil(tx["gas"] * self.gas_buffer)
            self.logger.debug(f"Simulated tx successfully: {tx}")
            return tx
