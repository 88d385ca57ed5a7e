"""Wire and result models."""
