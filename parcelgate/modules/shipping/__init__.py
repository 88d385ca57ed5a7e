"""Carrier clients and the shared shipping machinery."""
