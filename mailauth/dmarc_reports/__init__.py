"""DMARC aggregate report ingestion."""
