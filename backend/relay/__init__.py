"""Relay: message delivery and presence backend for real-time chat."""
