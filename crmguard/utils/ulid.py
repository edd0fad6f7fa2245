"""ULID generation for audit entry IDs and protection session IDs.

ULIDs sort by creation time, so audit rows written by the same process keep
their insertion order when listed by ID.

Uses the `python-ulid` library; do not hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Example::

        entry_id = generate_ulid()
        # "01KJ0JRVHYA7KX32VPN5ZSCTMV"
        assert len(entry_id) == 26
    """
    return str(ULID())
