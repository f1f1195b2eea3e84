"""Bearer token authentication for the CanvasFlow API."""
