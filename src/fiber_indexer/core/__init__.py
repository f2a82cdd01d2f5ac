"""Cross-cutting runtime pieces shared by the indexing components."""
