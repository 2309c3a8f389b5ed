"""Client-facing listeners."""
