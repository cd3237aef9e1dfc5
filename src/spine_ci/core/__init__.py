"""Core primitives: errors, settings, retry, storage and scheduling."""
