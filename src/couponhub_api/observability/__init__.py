"""Tracing setup and in-memory entitlement counters."""
