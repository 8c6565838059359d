"""
Variant Bridge - job queue between the design app and the rendering bridge

This package provides a FastAPI-based web service that hands design variant
rendering work to an out-of-process worker (the "bridge") and records the
results. It enables:

- Enqueueing variants for rendering, at most one active job per variant
- Priority/FIFO dispatch to the bridge, claiming jobs as they are handed out
- Status reports from the bridge, cascaded atomically into the variant
- Lease expiry for jobs the bridge stopped reporting on
- Variant CRUD with best-effort artifact cleanup in the blob store

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Enqueue, dispatch, completion and job cleanup
    - variant_manager: Variant records and cascading deletion
    - database: SQLite persistence and transactions
    - blob_store: S3 and local-filesystem artifact storage
    - key_manager: API keys and roles for the authorization gate
    - configuration: OmegaConf settings with environment overrides

Usage:
    Run the API server with:
        uvicorn variant_bridge.main:app --reload --host 0.0.0.0 --port 8000
"""
