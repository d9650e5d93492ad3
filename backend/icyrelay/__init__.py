"""ICY stream relay."""
