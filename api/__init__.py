"""Status and control HTTP API of the cron worker."""
