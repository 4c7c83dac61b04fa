"""Document image extraction pipeline: job queue, per-tenant workers, reply normalizer."""

__version__ = "0.1.0"
