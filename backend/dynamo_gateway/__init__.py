"""DynamoDB gateway: admission control, classified retries, batch/transaction reconciliation."""
