"""SQLite persistence: engine policy, ORM tables, migrations."""
