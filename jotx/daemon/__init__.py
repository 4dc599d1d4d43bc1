"""Capture, storage, indexing and retrieval daemon."""
