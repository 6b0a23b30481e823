"""Persistence layer: models, engine/session management and repositories."""
