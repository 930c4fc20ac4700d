"""HTTP and WebSocket surface over a SyncEngine."""
