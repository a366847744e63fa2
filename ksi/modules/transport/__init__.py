"""Aggregator, extender and publications file transports."""
