"""Secret masking for tokens shown in logs and listings."""

from __future__ import annotations


def mask(secret: str | None, *, show: int = 6) -> str | None:
    """Mask all but the first `show` characters of a secret."""
    if secret is None:
        return None
    show = max(show, 0)
    if len(secret) <= show:
        return secret if secret else ""
    return secret[:show] + "*" * (len(secret) - show)
