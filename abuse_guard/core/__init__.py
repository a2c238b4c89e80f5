"""
Core modules for abuse-guard.

This package contains rate limiting, security event logging, IP and user
bans, base URL validation, daily usage quotas and the request facade.
"""
