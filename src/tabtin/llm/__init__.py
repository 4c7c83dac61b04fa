"""Outbound model calls: HTTP client, per-tenant limiter, failure classification."""
