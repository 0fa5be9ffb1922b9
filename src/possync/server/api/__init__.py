"""API routes for the local status server."""
