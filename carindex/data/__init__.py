# ============================================================================
# carindex/data/__init__.py
# Data Layer Package - Records and Persistence
# ============================================================================
#
# MODULES IN THIS PACKAGE:
# - **models.py**: ContentID, Block, and the persisted record shapes
# - **store.py**: BlockStore interface, in-memory and SQLite implementations
# - **merger.py**: First-sighting insert / occurrence append per CID
#
# DATA FLOW:
# Block decoded -> BlockMerger looks up CID -> new record or appended occurrence
#
# ============================================================================
