"""LockBlip Ghost - HTTP and WebSocket API."""
