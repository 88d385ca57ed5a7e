"""Configuration, persistence and error hierarchy."""
