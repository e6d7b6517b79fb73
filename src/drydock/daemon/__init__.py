"""Per-repository daemon: scheduler loop, supervision, and process lifecycle."""
