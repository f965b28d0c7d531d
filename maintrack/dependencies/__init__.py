"""FastAPI dependencies for authentication and services."""
