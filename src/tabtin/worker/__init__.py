"""Per-tenant job executors and the pool that supervises them."""
