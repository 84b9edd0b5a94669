"""
Exchange Feed Connectors Package

This package contains one subfolder per upstream exchange feed. Each has:
- api_client.py: REST logic (product list used to reconcile instruments)
- ws_client.py: WebSocket feed implementing core.feed_interface.FeedConnection

New exchanges are registered in core.feed_registry.FeedRegistry.
"""
