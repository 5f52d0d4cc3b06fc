"""Core infrastructure: configuration, logging, database and exceptions."""
