"""Log analysis helpers."""
