"""Deterministic job-name sanitizer for artifact directories.

Produces a filesystem-safe directory name from free-form generation config
names such as ``Portrait / studio light`` or ``cats: v2``.

Rules:
  1. Replace any character not in ``[A-Za-z0-9._-]`` with ``_``.
  2. Collapse consecutive underscores.
  3. Strip leading/trailing underscores and dots.
  4. Truncate to 90 characters.
  5. Fall back to ``unnamed`` when nothing is left.

Stripping dots keeps ``..`` and hidden names out of the output tree.
"""
from __future__ import annotations

import re

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]")
_MULTI_UNDERSCORE_RE = re.compile(r"_+")


def sanitize_job_name(name: str) -> str:
    """Return a filesystem-safe version of *name*.

    >>> sanitize_job_name("cats: v2")
    'cats_v2'
    >>> sanitize_job_name("Portrait / studio light")
    'Portrait_studio_light'
    >>> sanitize_job_name("../etc")
    'etc'
    """
    s = _UNSAFE_RE.sub("_", name or "")
    s = _MULTI_UNDERSCORE_RE.sub("_", s)
    s = s.strip("_.")
    s = _MULTI_UNDERSCORE_RE.sub("_", s)
    s = s.strip("_")
    return s[:90] or "unnamed"
