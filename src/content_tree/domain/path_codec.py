"""Materialized path codec.

A path lists every id from the root down to the node itself, joined and
wrapped by ``PATH_DELIMITER``: ``-1-4-9-`` is node 9 under 4 under root 1.

- Pure string functions: no DB, no clock.
- Ids are positive integers, so the delimiter can never occur inside one.
- Leading and trailing delimiters are always present; empty segments are
  rejected rather than collapsed.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from content_tree.errors import MalformedPath, PrefixMismatch


PATH_DELIMITER = "-"

_PATH_RE = re.compile(r"^-(?:[1-9][0-9]*-)+$")


def _check_id(value: int) -> str:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise MalformedPath(f"invalid node id in path: {value!r}")
    return str(value)


def encode(ancestor_ids: Iterable[int], self_id: int) -> str:
    segments = [_check_id(x) for x in ancestor_ids]
    segments.append(_check_id(self_id))
    return PATH_DELIMITER + PATH_DELIMITER.join(segments) + PATH_DELIMITER


def validate(path: str) -> str:
    if not isinstance(path, str) or _PATH_RE.match(path) is None:
        raise MalformedPath(f"malformed path: {path!r}", details={"path": path})
    return path


def decode(path: str) -> list[int]:
    """Return the id chain root-first, including the node itself."""
    validate(path)
    return [int(x) for x in path[1:-1].split(PATH_DELIMITER)]


def depth(path: str) -> int:
    # "-1-" has depth 0; every extra segment adds one level.
    validate(path)
    return path.count(PATH_DELIMITER) - 2


def self_id(path: str) -> int:
    return decode(path)[-1]


def ancestor_ids(path: str) -> list[int]:
    return decode(path)[:-1]


def child_path(parent_path: str | None, node_id: int) -> str:
    if parent_path is None:
        return encode([], node_id)
    return encode(decode(parent_path), node_id)


def parent_path(path: str) -> str | None:
    ids = decode(path)
    if len(ids) == 1:
        return None
    return encode(ids[:-2], ids[-2])


def is_descendant_path(candidate: str, ancestor: str) -> bool:
    return candidate != ancestor and candidate.startswith(ancestor)


def rebase(old_path: str, old_prefix: str, new_prefix: str) -> str:
    if not old_path.startswith(old_prefix):
        raise PrefixMismatch(
            f"path {old_path!r} does not start with {old_prefix!r}",
            details={"path": old_path, "old_prefix": old_prefix},
        )
    return new_prefix + old_path[len(old_prefix) :]


def prefix_upper_bound(prefix: str) -> str:
    """Exclusive upper key for a byte-ordered range scan over ``prefix``.

    Every string starting with ``prefix`` sorts in ``[prefix, upper)``.
    """
    validate(prefix)
    return prefix[:-1] + chr(ord(prefix[-1]) + 1)
