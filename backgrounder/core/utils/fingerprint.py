"""Deterministic content fingerprint for job deduplication.

Both the Job model and WAL recovery rely on this value being stable
across processes, so the canonical encoding must never change.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> str:
    """Key-sorted compact JSON; values JSON cannot encode fall back to str()."""
    return json.dumps(value, sort_keys=True, separators=(',', ':'), default=str)


def job_fingerprint(job_name: str, job_args: Any) -> str:
    """SHA-256 over the canonical [job_name, job_args] pair.

    The job id is not part of the digest; two instances of the same call
    share a fingerprint.
    """
    return hashlib.sha256(canonical_json([job_name, job_args]).encode()).hexdigest()
