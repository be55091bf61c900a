"""PDF page pipeline: durable job queue, page workers, progress API."""

__version__ = "1.0.0"
