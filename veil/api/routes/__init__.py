from veil.api.routes import bettors, computations, markets

__all__ = [
    "bettors",
    "computations",
    "markets",
]
