"""DuckDB persistence for groups, users and messages."""
