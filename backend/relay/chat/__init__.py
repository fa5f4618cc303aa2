"""Real-time chat module: connection sessions, send path and HTTP routes."""
