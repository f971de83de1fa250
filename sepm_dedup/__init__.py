"""
SEPM duplicate client cleanup Python package.

Modules:
- api_client: SEPM REST API client (login/logout, paginated computers, delete)
- dedup: grouping, retention and deletion over an explicit run context
- dedup_handler: one-pass run orchestration + Lambda entry (Secrets Manager creds)
- cli: command line entry (dry run by default)
- errors: fatal/non-fatal stage failures
"""
__all__ = ["api_client", "dedup", "dedup_handler", "cli", "errors"]
