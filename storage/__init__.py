"""On-disk cache of ACME keys and certificates."""
