"""Speech capture adapters."""
