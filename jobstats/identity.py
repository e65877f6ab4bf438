"""Deterministic, content-addressed job identifiers."""

import hashlib
import uuid

from .exceptions import IdentityError


def uuid_from_strings(parts: list[str]) -> str:
    """Derive a UUID-shaped identifier from an ordered list of strings.

    The 128-bit MD5 digest of the comma-joined input is formatted as a UUID.
    The result depends on the order of ``parts``, so callers must always
    pass a literal ordered list.

    Args:
        parts: Ordered identity components, e.g. ``[jobid, uid, account, nodes]``

    Returns:
        Identifier such as ``"5f0c6b47-9d4e-2a8a-3a1e-0c1f9a7d2b11"``

    Raises:
        IdentityError: If the components cannot be encoded or hashed
    """
    try:
        digest = hashlib.md5(",".join(parts).encode("utf-8"), usedforsecurity=False).digest()
        return str(uuid.UUID(bytes=digest))
    except (TypeError, ValueError) as e:
        raise IdentityError(f"Failed to derive identifier from {parts!r}: {e}") from e
