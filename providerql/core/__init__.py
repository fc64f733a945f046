"""Schema resolution, filter and sort compilation."""
