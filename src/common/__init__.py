"""
Common utilities for rmount.

Modules:
- errors: error taxonomy shared by every component
- settings: process settings from the environment
- log: loguru sink setup
- s3_client: S3 bucket browsing and connection checks (boto3)
- gist: GitHub Gist backup transport (httpx)
- autostart: login-item registration
- rwlock, fsutil: locking and atomic file writes
"""

__all__ = [
    "autostart",
    "errors",
    "fsutil",
    "gist",
    "log",
    "rwlock",
    "s3_client",
    "settings",
]
