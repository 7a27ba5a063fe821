"""Durable storage: queue database helpers and the object store gateway."""
