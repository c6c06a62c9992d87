"""Personal certificate authority manager with an encrypted key vault."""

__version__ = "1.0.0"
