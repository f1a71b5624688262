"""Core configuration, models and error taxonomy."""
