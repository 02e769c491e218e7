"""
Ticket Ingest
Multi-tenant email-to-ticket ingestion service
"""
__version__ = "1.0.0"
