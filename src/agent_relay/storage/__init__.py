"""SQLite storage primitives shared by orchestration repositories."""
