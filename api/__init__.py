"""FastAPI application for the Minutebook service."""
