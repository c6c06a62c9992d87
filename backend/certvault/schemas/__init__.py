"""Pydantic schemas for the certificate vault."""
