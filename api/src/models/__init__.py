"""Pydantic response models for the status API."""
