"""HTTP API over a single process-wide upload queue."""
