from .copy_trading import CopyTradeSettings, CopyTradeSettingsProvider, PushTransport
from .execution import BuiltTransaction, ExecutionProvider, KeyCustody, Signer

__all__ = [
    "BuiltTransaction",
    "CopyTradeSettings",
    "CopyTradeSettingsProvider",
    "ExecutionProvider",
    "KeyCustody",
    "PushTransport",
    "Signer",
]
