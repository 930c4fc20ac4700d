"""Map-click queries and attribute display formatting."""
