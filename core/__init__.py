"""
Core Package

Contains the exchange-agnostic core logic including:
- Schemas: the canonical Trade model and its payload / storage shapes
- Normalizer: raw exchange event -> Trade or rejection reason
- FeedConnection: abstract contract for upstream exchange feeds
- FeedRegistry: exchange name -> feed connection factory
- Errors: the pipeline error taxonomy
- Config and logging
"""
