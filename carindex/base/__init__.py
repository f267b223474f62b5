# ============================================================================
# carindex/base/__init__.py
# Base Package - Configuration
# ============================================================================
#
# - **config.py**: Environment-driven settings and logging setup
#
# ============================================================================
