"""HTTP-level tests for the vote API.

The app runs in-process through httpx's ASGI transport with the in-memory
store and dispatcher from the shared conftest.
"""
