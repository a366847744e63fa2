"""Signature model, services and verification."""
