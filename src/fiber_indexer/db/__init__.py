"""SQLite persistence for snapshots, fibers, checkpoint records and rejections."""
