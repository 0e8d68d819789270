"""HTTP and WebSocket surface of static-engine."""
