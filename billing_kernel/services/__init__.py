"""Billing kernel services.  Services flush; callers own commit/rollback."""
