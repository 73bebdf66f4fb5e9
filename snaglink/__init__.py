"""
SnagLink access service.

Time-boxed magic links giving contractors scoped access to snag records,
optionally gated by a numeric PIN with progressive lockout, behind a
shared fixed-window rate limiter and an append-only audit trail.

Usage:
    uvicorn --factory snaglink.main:create_app
"""

__version__ = "1.0.0"
