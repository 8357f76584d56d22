"""Core business logic for the sale payment lifecycle."""
