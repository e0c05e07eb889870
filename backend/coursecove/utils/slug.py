"""
Organization slug rules.

A slug is the public path identifier of an organization: 3-50 chars,
lowercase alphanumerics separated by single hyphens, not a reserved word,
and globally unique.

Usage:
    slugify("Joe's @ Music #1")          # "joes-music-1"
    validate_slug_format("my-business")  # SlugValidation(valid=True, ...)
    check_slug_availability(db, "my-business")
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from coursecove.models.organization import Organization

SLUG_MIN_LENGTH = 3
SLUG_MAX_LENGTH = 50
SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

RESERVED_SLUGS = frozenset({
    # System routes
    "admin", "api", "app", "dashboard", "onboarding", "settings", "account",
    "profile", "login", "logout", "signin", "signout", "signup", "sign-in",
    "sign-out", "sign-up", "register", "auth", "oauth", "sso", "callback",
    # Support & communication
    "help", "support", "contact", "feedback", "status", "docs",
    "documentation", "faq", "terms", "privacy", "legal", "security", "trust",
    # Infrastructure
    "www", "mail", "email", "smtp", "ftp", "cdn", "assets", "static", "media",
    "files", "images", "img", "downloads", "uploads",
    # Business reserved
    "coursecove", "course-cove", "demo", "test", "testing", "staging", "dev",
    "development", "prod", "production", "sandbox", "trial", "beta", "alpha",
    # Common words that could cause confusion
    "blog", "news", "about", "team", "jobs", "careers", "pricing", "plans",
    "billing", "invoice", "invoices", "payment", "payments", "checkout",
    "subscribe", "subscription",
    # API & webhooks
    "webhooks", "webhook", "hooks", "events", "notifications", "integrations",
    # Misc
    "null", "undefined", "true", "false", "root", "system", "internal",
    "public", "private",
})

_STRIP_SPECIAL = re.compile(r"[^\w\s-]", re.ASCII)
_COLLAPSE_SEPARATORS = re.compile(r"[\s_-]+", re.ASCII)


class SlugReason(str, Enum):
    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    INVALID_FORMAT = "invalid_format"
    RESERVED = "reserved"
    TAKEN = "taken"


_MESSAGES = {
    SlugReason.TOO_SHORT: f"Must be at least {SLUG_MIN_LENGTH} characters",
    SlugReason.TOO_LONG: f"Must be {SLUG_MAX_LENGTH} characters or less",
    SlugReason.INVALID_FORMAT: "Use only lowercase letters, numbers, and hyphens",
    SlugReason.RESERVED: "This URL is reserved",
    SlugReason.TAKEN: "This URL is already taken",
}


@dataclass(frozen=True)
class SlugValidation:
    valid: bool
    available: bool
    reason: Optional[SlugReason] = None

    @property
    def message(self) -> Optional[str]:
        return _MESSAGES.get(self.reason) if self.reason else None

    @classmethod
    def rejected(cls, reason: SlugReason) -> "SlugValidation":
        return cls(valid=False, available=False, reason=reason)


def slugify(text: str) -> str:
    """Normalize free text (a business name) into slug form."""
    slug = text.lower().strip()
    slug = _STRIP_SPECIAL.sub("", slug)
    slug = _COLLAPSE_SEPARATORS.sub("-", slug)
    return slug.strip("-")


def validate_slug_format(slug: str) -> SlugValidation:
    """
    Check length, format and reserved words. Does not touch the database.

    Checks run in this order and the first failure wins:
    too_short, too_long, invalid_format, reserved.
    """
    if len(slug) < SLUG_MIN_LENGTH:
        return SlugValidation.rejected(SlugReason.TOO_SHORT)
    if len(slug) > SLUG_MAX_LENGTH:
        return SlugValidation.rejected(SlugReason.TOO_LONG)
    if not SLUG_PATTERN.match(slug):
        return SlugValidation.rejected(SlugReason.INVALID_FORMAT)
    if slug in RESERVED_SLUGS:
        return SlugValidation.rejected(SlugReason.RESERVED)
    return SlugValidation(valid=True, available=True)


def check_slug_availability(
    db: Session,
    slug: str,
    exclude_org_id: Optional[str] = None,
) -> SlugValidation:
    """Format check followed by a uniqueness check against organizations."""
    result = validate_slug_format(slug)
    if not result.valid:
        return result

    query = db.query(Organization.id).filter(Organization.slug == slug)
    if exclude_org_id is not None:
        query = query.filter(Organization.id != exclude_org_id)
    if query.first() is not None:
        return SlugValidation(valid=True, available=False, reason=SlugReason.TAKEN)
    return result


def suggest_slug(db: Session, name: str, exclude_org_id: Optional[str] = None) -> str:
    """
    Derive an available slug from a name, appending -2, -3, ... on collision.

    Names that cannot produce a valid slug fall back to "org-<n>".
    """
    base = slugify(name)[:SLUG_MAX_LENGTH - 4].strip("-")
    if not validate_slug_format(base).valid:
        base = f"org-{base}" if base else "org"
        base = base[:SLUG_MAX_LENGTH - 4].strip("-")

    candidate = base
    suffix = 1
    while True:
        result = check_slug_availability(db, candidate, exclude_org_id=exclude_org_id)
        if result.valid and result.available:
            return candidate
        suffix += 1
        candidate = f"{base}-{suffix}"
