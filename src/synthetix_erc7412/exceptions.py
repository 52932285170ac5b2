"""Exceptions raised by the Synthetix client."""

from eth_utils import encode_hex


class SynthetixError(Exception):
    """Base class for all errors raised by this package."""


class OracleDataRequired(SynthetixError):
    """
    Raised when a revert payload is an ERC-7412 ``OracleDataRequired`` error.
    The multicall engine catches it, fulfills the oracle query and retries, so
    it does not escape the engine.

    :param ERC7412Requests requests: The aggregated price requests.
    :param bytes revert_data: The revert payload that was classified.
    """

    def __init__(self, requests, revert_data: bytes = b""):
        self.requests = requests
        self.revert_data = revert_data
        super().__init__(
            f"Oracle data required for {len(requests.feed_ids())} feeds"
        )


class MalformedOracleError(SynthetixError):
    """
    The revert selector matched an ERC-7412 error but the payload could not be
    decoded. This points at a protocol or ABI version mismatch and is never
    retried.
    """

    def __init__(self, message: str, revert_data: bytes = b""):
        self.revert_data = revert_data
        super().__init__(message)


class PriceServiceError(SynthetixError):
    """The price service failed to return update data for the requested feeds."""


class ContractCallError(SynthetixError):
    """
    A contract call reverted with an error that is not related to oracle data.
    The original revert payload is kept on ``revert_data`` so callers can
    decode protocol specific errors.
    """

    def __init__(self, revert_data: bytes = b"", message: str = None):
        self.revert_data = revert_data
        if message is None:
            message = f"Contract call reverted: {encode_hex(revert_data)}"
        super().__init__(message)


class DecodeError(SynthetixError):
    """Return data does not match the output schema of the called function."""

    def __init__(self, function_name: str, message: str):
        self.function_name = function_name
        super().__init__(f"Failed to decode result of {function_name}: {message}")
