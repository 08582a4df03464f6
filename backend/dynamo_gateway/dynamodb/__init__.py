"""Shared DynamoDB utilities.

This package centralizes:
- boto3 / DAX client configuration and backend routing
- the admission gate bounding concurrent backend calls
- error classification and the retry/backoff policy
- page accumulation and cursor token encoding/decoding
- batch and transactional reconciliation

"""
