# ============================================================================
# carindex/engine/__init__.py
# Engine Package - Scheduling and Archive Ingestion
# ============================================================================
#
# - **scheduler.py**: Bounded-concurrency, fail-fast task scheduler
# - **ingestor.py**: Per-archive state machine and sequential batch driver
#
# ============================================================================
