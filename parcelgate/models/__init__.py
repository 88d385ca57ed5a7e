"""
ParcelGate models.

Import ORM models from their modules (parcelgate.models.tracking_event,
parcelgate.models.webhook_subscription). This package init stays empty so
that parcelgate.core.config can import carrier reference data without
loading the database layer.
"""
