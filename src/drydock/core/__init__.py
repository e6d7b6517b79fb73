"""Core building blocks: models, failure classes, backoff, events, logging."""
