"""Persistence and read-side services."""
