"""ParcelGate test suite."""
