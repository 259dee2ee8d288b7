"""SQLite persistence layer: tables, engine policy and migrations."""
