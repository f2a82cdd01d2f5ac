"""Long-lived indexer components and their lifecycle."""
