from .perps import Perps
