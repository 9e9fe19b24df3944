"""HTTP API for the document archive credential service."""
