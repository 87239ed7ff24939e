"""Video room provider integration (Daily.co REST API)."""
