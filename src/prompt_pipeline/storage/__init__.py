"""SQLite storage policy, ORM tables and migrations runner."""
