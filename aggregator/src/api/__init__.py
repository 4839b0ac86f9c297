"""
HTTP surface of the aggregator daemon.

FastAPI routers for device event ingest, totals and breakdown reads, manual
actions and the unauthenticated health check, plus bearer token auth.
"""
