from .spot import Spot
