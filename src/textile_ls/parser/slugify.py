"""Header text to link-fragment slugs."""

import re

# Unicode letters, digits, underscore, whitespace and hyphen survive
_DISALLOWED = re.compile(r"[^\w\s-]")
_SEPARATORS = re.compile(r"[\s-]+")


def slugify(text: str) -> str:
    """Convert header text to the slug used as a link fragment.

    Lowercases, drops punctuation, collapses runs of whitespace and hyphens
    into a single ``-`` and trims hyphens from both ends. The result is
    stable under re-slugging: ``slugify(slugify(s)) == slugify(s)``.

    Args:
        text: Header text or link fragment.

    Returns:
        The slug, possibly empty.
    """
    slug = _DISALLOWED.sub("", text.strip().lower())
    slug = _SEPARATORS.sub("-", slug)
    return slug.strip("-")
