"""Shared utilities: logging, encryption and retry."""
