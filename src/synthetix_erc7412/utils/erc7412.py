"""
Decoding of ERC-7412 revert payloads.

Contracts that need fresh oracle data revert with ``OracleDataRequired``. The
payload names the oracle contract and an oracle specific query; for the Pyth
wrapper the query is ``(uint8 updateType, uint64 stalenessTolerance, bytes32[] feedIds)``.
Several errors can be bundled into a single ``Errors(bytes[])`` revert.
"""

from dataclasses import dataclass, field

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_typing import HexStr
from eth_utils import decode_hex, encode_hex, to_checksum_address

from ..exceptions import ContractCallError, MalformedOracleError, OracleDataRequired


# constants
SELECTOR_ORACLE_DATA_REQUIRED = "0xcf2cabdf"
SELECTOR_ORACLE_DATA_REQUIRED_WITH_FEE = "0x0e7186fb"
SELECTOR_ERRORS = "0x0b42fd17"

UPDATE_TYPE_LATEST = 1
UPDATE_TYPE_PUBLISH_TIME = 2


@dataclass
class OracleErrorInfo:
    """The arguments of a single ``OracleDataRequired`` error."""

    oracle_address: str
    update_type: int
    staleness_tolerance: int
    feed_ids: list[HexStr]
    raw_feed_ids: list[bytes]
    fee: int = 0


@dataclass
class PythLatestRequest:
    """
    Latest price requests to one oracle. Feed lists are merged so one
    fulfillment call covers every feed, using the strictest staleness tolerance
    among the merged errors.
    """

    oracle_address: str
    feed_ids: list[HexStr] = field(default_factory=list)
    staleness_tolerance: int | None = None
    fee: int = 0


@dataclass
class PythVaaRequest:
    """A request for price data at a specific publish time."""

    oracle_address: str = ""
    feed_ids: list[HexStr] = field(default_factory=list)
    publish_time: int = 0
    fee: int = 0


@dataclass
class ERC7412Requests:
    """
    All of the price data requested by a revert. Latest price requests are merged
    per oracle address, publish time requests are kept separate.
    """

    pyth_latest: dict[str, PythLatestRequest] = field(default_factory=dict)
    pyth_vaa: list[PythVaaRequest] = field(default_factory=list)

    def add(self, info: OracleErrorInfo):
        if info.update_type == UPDATE_TYPE_LATEST:
            latest = self.pyth_latest.setdefault(
                info.oracle_address, PythLatestRequest(info.oracle_address)
            )
            if latest.staleness_tolerance is None:
                latest.staleness_tolerance = info.staleness_tolerance
            else:
                latest.staleness_tolerance = min(
                    latest.staleness_tolerance, info.staleness_tolerance
                )
            latest.feed_ids = latest.feed_ids + [
                feed_id for feed_id in info.feed_ids if feed_id not in latest.feed_ids
            ]
            latest.fee = latest.fee + info.fee
        elif info.update_type == UPDATE_TYPE_PUBLISH_TIME:
            self.pyth_vaa = self.pyth_vaa + [
                PythVaaRequest(
                    oracle_address=info.oracle_address,
                    feed_ids=info.feed_ids,
                    publish_time=info.staleness_tolerance,
                    fee=info.fee,
                )
            ]

    def feed_ids(self) -> list[HexStr]:
        """Every feed id requested, latest requests first."""
        latest_feed_ids = [
            feed_id for r in self.pyth_latest.values() for feed_id in r.feed_ids
        ]
        vaa_feed_ids = [feed_id for r in self.pyth_vaa for feed_id in r.feed_ids]
        return latest_feed_ids + vaa_feed_ids

    def has_latest(self) -> bool:
        # an error with an empty feed list still gets a fulfillment call
        return len(self.pyth_latest) > 0

    def is_empty(self) -> bool:
        return not self.has_latest() and len(self.pyth_vaa) == 0


def _to_bytes(error_data) -> bytes:
    if error_data is None:
        return b""
    if isinstance(error_data, str):
        return decode_hex(error_data)
    return bytes(error_data)


def has_selector(error_data, selector: str) -> bool:
    """Bit exact check of the leading 4 bytes of a revert payload."""
    error_data = _to_bytes(error_data)
    return len(error_data) >= 4 and error_data[:4] == decode_hex(selector)


def decode_erc7412_errors_error(error_data) -> list[bytes]:
    """Decodes an ``Errors(bytes[])`` error into the bundled revert payloads"""
    error_data = _to_bytes(error_data)
    try:
        errors = decode(["bytes[]"], error_data[4:])[0]
    except DecodingError as err:
        raise MalformedOracleError(
            f"Errors payload can not be decoded: {err}", error_data
        ) from err
    return list(errors)


def decode_erc7412_oracle_data_required_error(error_data) -> OracleErrorInfo:
    """
    Decodes an ``OracleDataRequired`` error, with or without a fee. The oracle
    query is decoded according to its update type:

        - ``1``: ``(uint8 updateType, uint64 stalenessTolerance, bytes32[] feedIds)``
        - ``2``: ``(uint8 updateType, uint64 publishTime, bytes32 feedId)``

    :param bytes | str error_data: The revert payload, including the selector.
    :return: The decoded oracle error.
    :rtype: OracleErrorInfo
    """
    error_data = _to_bytes(error_data)
    with_fee = has_selector(error_data, SELECTOR_ORACLE_DATA_REQUIRED_WITH_FEE)

    # remove the signature and decode the error data
    try:
        if with_fee:
            address, data, fee = decode(["address", "bytes", "uint256"], error_data[4:])
        else:
            address, data = decode(["address", "bytes"], error_data[4:])
            fee = 0

        update_type = decode(["uint8"], data)[0]
        if update_type == UPDATE_TYPE_LATEST:
            _, staleness_tolerance, raw_feed_ids = decode(
                ["uint8", "uint64", "bytes32[]"], data
            )
            raw_feed_ids = list(raw_feed_ids)
        elif update_type == UPDATE_TYPE_PUBLISH_TIME:
            _, staleness_tolerance, raw_feed_id = decode(
                ["uint8", "uint64", "bytes32"], data
            )
            raw_feed_ids = [raw_feed_id]
        else:
            raise MalformedOracleError(
                f"Unknown update type: {update_type}", error_data
            )
    except DecodingError as err:
        raise MalformedOracleError(
            f"Oracle error data can not be decoded: {err}", error_data
        ) from err

    return OracleErrorInfo(
        oracle_address=to_checksum_address(address),
        update_type=update_type,
        staleness_tolerance=staleness_tolerance,
        feed_ids=[encode_hex(raw_feed_id) for raw_feed_id in raw_feed_ids],
        raw_feed_ids=raw_feed_ids,
        fee=fee,
    )


def aggregate_erc7412_price_requests(error_data, requests=None, revert_data=None):
    """
    Figures out all the prices requested by an ERC-7412 revert and puts them in
    aggregated requests. Bundled ``Errors`` are walked recursively. Anything that
    is not an oracle error raises ``ContractCallError`` carrying the top level
    revert payload.

    :param bytes | str error_data: The revert payload.
    :param ERC7412Requests requests: Requests to add to.
    :param bytes revert_data: The top level payload, set on recursion.
    :return: The aggregated requests.
    :rtype: ERC7412Requests
    """
    error_data = _to_bytes(error_data)
    if revert_data is None:
        revert_data = error_data
    if requests is None:
        requests = ERC7412Requests()

    if has_selector(error_data, SELECTOR_ERRORS):
        for sub_error in decode_erc7412_errors_error(error_data):
            requests = aggregate_erc7412_price_requests(
                sub_error, requests, revert_data
            )
        return requests

    if has_selector(error_data, SELECTOR_ORACLE_DATA_REQUIRED) or has_selector(
        error_data, SELECTOR_ORACLE_DATA_REQUIRED_WITH_FEE
    ):
        requests.add(decode_erc7412_oracle_data_required_error(error_data))
        return requests

    raise ContractCallError(revert_data)


def raise_for_revert(error_data):
    """
    Classify a revert payload. Oracle errors raise ``OracleDataRequired`` with the
    aggregated requests, undecodable oracle errors raise ``MalformedOracleError``
    and everything else raises ``ContractCallError``.
    """
    error_data = _to_bytes(error_data)
    requests = aggregate_erc7412_price_requests(error_data)

    # an empty Errors bundle has nothing to fulfill
    if requests.is_empty():
        raise ContractCallError(error_data)
    raise OracleDataRequired(requests, error_data)
