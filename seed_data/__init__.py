"""Static demo content loaded by ``database.seed_data``."""
