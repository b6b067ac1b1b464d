"""Schema Map: live catalog index grouped by business domain."""
