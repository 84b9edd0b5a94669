"""
Services Package

Long-running pipeline components:
- topic_router: topic -> subscriber fan-out
- persistence_sink: non-blocking writer in front of the trade store
- pipeline: the supervisor that wires feeds, normalizer, router and sink
"""
