"""HTTP surface of the indexer: webhooks and read-only query routes."""
