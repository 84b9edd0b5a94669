"""
FastAPI Application Package

This package contains the main FastAPI application: the pipeline lifespan,
the per-pair WebSocket subscription endpoint and the read endpoints over the
trade store.
"""
