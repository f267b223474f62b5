# ============================================================================
# carindex/__init__.py
# Package Marker for the CAR Block Indexer
# ============================================================================
#
# PURPOSE:
# Ingests content-addressable archives (CAR files) into a block store, merging
# blocks seen in several archives and remembering which archives are done so
# an interrupted batch can be replayed safely.
#
# SUBPACKAGES:
# - **base/**: Configuration and logging setup
# - **codecs/**: Multicodec registry and block decoding
# - **data/**: Data model, block stores and the dedup/merge protocol
# - **engine/**: Bounded task scheduler and the per-archive state machine
# - **utils/**: Async and clock helpers
#
# ============================================================================

__version__ = "0.1.0"
