"""
FastAPI routers for the ingestion service.

Each module owns one group of endpoints and is registered in ``bulkload.main``.
"""
