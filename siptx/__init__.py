"""SIP transaction layer: client and server transactions, message model, mock transport and timers."""

__version__ = "0.1.0"
__all__ = [
    "client_tx",
    "layer",
    "message",
    "mock_transport",
    "server_tx",
    "timing",
    "transaction",
]