"""Shared utilities: configuration, logging, model clients and caching."""
