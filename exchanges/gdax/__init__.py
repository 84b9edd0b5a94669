"""
GDAX (Coinbase Exchange) Feed Connector

Implements FeedConnection for the GDAX / Coinbase Exchange public feed.

Structure:
    exchanges/gdax/
    ├── __init__.py      # This file
    ├── api_client.py    # REST product list (instrument reconciliation)
    └── ws_client.py     # WebSocket ticker feed (GdaxFeedConnection)
"""

from .api_client import GdaxAPIClient
from .ws_client import GdaxFeedConnection

__all__ = ["GdaxAPIClient", "GdaxFeedConnection"]
