from .wei import ether_to_wei, wei_to_ether, format_ether, format_wei
from .multicall import (
    Call,
    CallResult,
    ERC7412Multicall,
    TrustedMulticallForwarder,
    decode_result,
    encode_call,
)

__all__ = [
    "ether_to_wei",
    "wei_to_ether",
    "format_ether",
    "format_wei",
    "Call",
    "CallResult",
    "ERC7412Multicall",
    "TrustedMulticallForwarder",
    "decode_result",
    "encode_call",
]
