"""
CourseCove backend.

Multi-tenant scheduling service for teaching businesses. Identity is owned
by Clerk and mirrored locally through webhook-driven sync.
"""

__version__ = "0.1.0"
