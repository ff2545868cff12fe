"""Access-control layer for a content website theme: rate limiting, secure sessions, audit log"""

__version__ = "1.0.0"
