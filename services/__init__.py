"""Sync orchestration and search services."""
