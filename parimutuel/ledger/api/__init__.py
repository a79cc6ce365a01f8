from .http_client import BettingClient
from .http_server import LedgerHTTPServer

__all__ = ["BettingClient", "LedgerHTTPServer"]
