"""Carrier integration modules."""
