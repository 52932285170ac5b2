from .synthetix import Synthetix
from .exceptions import (
    SynthetixError,
    OracleDataRequired,
    MalformedOracleError,
    PriceServiceError,
    ContractCallError,
    DecodeError,
)
from .utils.multicall import ERC7412Multicall, TrustedMulticallForwarder
