"""Shared helpers: async task management and timestamps."""
