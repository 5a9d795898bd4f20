"""Shared helpers: errors, logging, credentials and asyncio utilities."""
