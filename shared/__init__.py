"""Shared building blocks for the cron worker and its status API."""
