"""Annotation-backed bookkeeping shared by the two reconcilers.

The API server offers no query for "which gateways does this route point at"
nor its inverse, so each route carries a snapshot of the parent references it
had when it was last reconciled.  Schema:

``gateway-controller.homelab.io/previous-parent-refs`` (on routes)
    JSON ``{"parentRefs": [{"group"?, "kind"?, "namespace"?, "name", ...}]}``.
    Unreadable payloads are treated as "no prior record".

``gateway-controller.homelab.io/child-modified-at`` (on WrappedGateways)
    RFC 3339 timestamp.  Only its change matters: writing it produces a watch
    event that re-queues the gateway.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from gatewaycontroller.src.api import (
    ANNOTATION_CHILD_MODIFIED_AT,
    ANNOTATION_PREVIOUS_PARENT_REFS,
    ParentRef,
    annotations_of,
)

LOGGER = logging.getLogger(__name__)


def read_previous_parent_refs(obj: dict[str, Any]) -> list[ParentRef]:
    raw = annotations_of(obj).get(ANNOTATION_PREVIOUS_PARENT_REFS)
    if raw is None:
        return []
    try:
        payload = json.loads(raw)
        refs = payload["parentRefs"]
        if refs is None:
            return []
        if not isinstance(refs, list):
            raise TypeError("parentRefs must be a list")
        return [ParentRef.from_dict(ref) for ref in refs]
    except (ValueError, TypeError, KeyError) as exc:
        LOGGER.debug(
            "Ignoring unreadable %s annotation (%s); treating as no prior record",
            ANNOTATION_PREVIOUS_PARENT_REFS,
            exc,
        )
        return []


def encode_parent_refs(refs: list[ParentRef]) -> str:
    return json.dumps(
        {"parentRefs": [ref.to_dict() for ref in refs]},
        separators=(",", ":"),
    )


def write_previous_parent_refs(obj: dict[str, Any], refs: list[ParentRef]) -> None:
    annotations_of(obj)[ANNOTATION_PREVIOUS_PARENT_REFS] = encode_parent_refs(refs)


def touch_child_modified(obj: dict[str, Any], timestamp: str) -> None:
    annotations_of(obj)[ANNOTATION_CHILD_MODIFIED_AT] = timestamp
