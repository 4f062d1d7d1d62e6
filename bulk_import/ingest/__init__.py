"""File ingestion: format detection, parsing and streaming artifacts."""
