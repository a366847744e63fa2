"""Signature extending."""
