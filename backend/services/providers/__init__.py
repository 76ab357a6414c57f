from .base import HttpExecutionProvider
from .jupiter import JupiterProvider, jupiter_provider
from .raydium import RaydiumProvider, raydium_provider

__all__ = [
    "HttpExecutionProvider",
    "JupiterProvider",
    "RaydiumProvider",
    "jupiter_provider",
    "raydium_provider",
]
