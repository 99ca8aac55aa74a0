"""HTTP and WebSocket surface of the dispatchhub daemon."""
