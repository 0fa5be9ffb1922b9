"""Local HTTP status API for UI processes outside the engine."""
