"""
Semantic memory: solutions, failures, warnings and repository fingerprints
stored in SQLite with embedding-backed similarity search.
"""
