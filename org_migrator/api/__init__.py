"""HTTP API for the org migrator."""
