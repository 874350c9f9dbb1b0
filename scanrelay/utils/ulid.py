"""ULID generation for relay job ids and pipeline run ids.

ULIDs are 26-character, Crockford Base32, lexicographically sortable by
creation time, which keeps `GET /jobs` ordering and object-store prefixes
chronological without a separate timestamp column.

Uses the `python-ulid` library; do NOT hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Example::

        job_id = generate_ulid()
        # "01KJ0JRVHYA7KX32VPN5ZSCTMV"
        assert len(job_id) == 26
    """
    return str(ULID())
