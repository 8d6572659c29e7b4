"""Core: settings, exceptions, database base classes, schemas and dependencies."""
