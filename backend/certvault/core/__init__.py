"""Certificate lifecycle and key management engines."""
