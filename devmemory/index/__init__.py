"""
Incremental code index: tree-sitter parsing of TypeScript, JavaScript and
Python sources into per-file symbol and import rows.
"""
