"""SQLite journal storage: ORM tables, engine policy and migrations."""
