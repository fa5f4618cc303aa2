"""Delivery tracking module."""

from .tracker import DeliveryTracker, aggregate_status

__all__ = ["DeliveryTracker", "aggregate_status"]
