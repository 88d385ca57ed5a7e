"""ParcelGate: multi-carrier rating, labels and tracking webhooks."""
