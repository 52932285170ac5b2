from decimal import Decimal

# default
DEFAULT_TRACKING_CODE = (
    "0x53594e5448455449585f53444b00000000000000000000000000000000000000"
)
DEFAULT_REFERRER = "0x0000000000000000000000000000000000000000"
DEFAULT_SLIPPAGE = 2.0
DEFAULT_GAS_MULTIPLIER = 2.0

DEFAULT_PRICE_SERVICE_ENDPOINT = "https://hermes.pyth.network"
DEFAULT_PRICE_SERVICE_TIMEOUT = 10
DEFAULT_PYTH_CACHE_TTL = 60

# erc7412
DEFAULT_FEE_PER_UPDATE = 1
DEFAULT_GAS_BUFFER = 1.15

ETH_DECIMAL = Decimal("1e18")
