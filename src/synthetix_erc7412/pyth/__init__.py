from .pyth import Pyth
