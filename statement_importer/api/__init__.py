"""API package: FastAPI routes and dependency providers."""
