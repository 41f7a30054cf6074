"""WhatsApp supplier-submission ingestion pipeline."""

__version__ = "1.0.0"
