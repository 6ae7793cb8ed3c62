"""HTTP API for the payrun engine."""
