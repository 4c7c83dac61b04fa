"""Tenants, batches, images, extraction rows and processing metrics."""
