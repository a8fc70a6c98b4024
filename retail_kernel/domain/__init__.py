"""Pure domain helpers (clock, value types)."""
