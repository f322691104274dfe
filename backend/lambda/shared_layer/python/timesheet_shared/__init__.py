"""timesheet_shared — Shared utilities for the timesheet job Lambda functions.

Provides:
    - Lazy boto3 client singletons (DynamoDB, SQS, SSM)
    - HTTP response helpers with origin-allowlist CORS
    - DynamoDB serialization and timestamp helpers
    - SSM parameter lookup with a warm-container cache
    - Job Record persistence (atomic counters, terminal transition)
    - Jira worklog client with retry/backoff
"""

__version__ = "1.0.0"
