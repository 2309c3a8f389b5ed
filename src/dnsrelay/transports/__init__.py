"""Upstream wire transports (one socket exchange per query)."""
