"""Configuration loading, validation, and logging setup."""
