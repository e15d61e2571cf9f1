"""Parse raw pod/namespace objects into denormalized metadata maps.

Input objects are JSON-shaped (camelCase keys) as delivered by the watch
stream's ``raw_object`` or produced by ``ApiClient.sanitize_for_serialization``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

from kubemeta.models.metadata import Metadata

# docker://<hash>, containerd://<hash>, cri-o://<hash>
_RUNTIME_PREFIX = re.compile(r"^[-_a-zA-Z0-9]+://")


class MetadataParser:
    """Turns API objects into the metadata maps cached and returned to callers."""

    def __init__(
        self,
        annotation_match: Iterable[str] = (),
        skip_labels: bool = False,
        skip_container_metadata: bool = False,
        skip_master_url: bool = False,
        master_url: str = "",
    ) -> None:
        self._annotation_patterns = [re.compile(p) for p in annotation_match]
        self._skip_labels = skip_labels
        self._skip_container_metadata = skip_container_metadata
        self._skip_master_url = skip_master_url
        self._master_url = master_url

    def match_annotations(self, annotations: dict[str, str]) -> dict[str, str]:
        """Keep only annotations whose key contains a match for an ``annotation_match`` pattern."""
        if not self._annotation_patterns:
            return {}
        return {
            key: value
            for key, value in annotations.items()
            if any(p.search(key) for p in self._annotation_patterns)
        }

    def parse_pod(self, pod: dict[str, Any]) -> Metadata:
        """Return the denormalized metadata for a pod.

        Raises:
            KeyError, TypeError, AttributeError: on a malformed payload.
        """
        metadata = pod["metadata"]
        spec = pod.get("spec") or {}
        status = pod.get("status") or {}

        labels = {} if self._skip_labels else _str_dict(metadata.get("labels"))
        annotations = self.match_annotations(_str_dict(metadata.get("annotations")))

        result: Metadata = {
            "namespace_name": metadata["namespace"],
            "pod_id": metadata["uid"],
            "pod_name": metadata["name"],
            "containers": self._parse_containers(status.get("containerStatuses") or []),
            "host": spec.get("nodeName"),
            "pod_ip": status.get("podIP"),
        }
        if annotations:
            result["annotations"] = annotations
        if labels:
            result["labels"] = labels
        owner_refs = _owner_refs(metadata.get("ownerReferences") or [])
        if owner_refs:
            result["owner_refs"] = owner_refs
        if not self._skip_master_url and self._master_url:
            result["master_url"] = self._master_url
        return result

    def parse_namespace(self, namespace: dict[str, Any]) -> Metadata:
        """Return the metadata for a namespace, including its creation timestamp."""
        metadata = namespace["metadata"]
        labels = {} if self._skip_labels else _str_dict(metadata.get("labels"))
        annotations = self.match_annotations(_str_dict(metadata.get("annotations")))

        result: Metadata = {
            "namespace_id": metadata["uid"],
            "creation_timestamp": metadata.get("creationTimestamp"),
        }
        if labels:
            result["namespace_labels"] = labels
        if annotations:
            result["namespace_annotations"] = annotations
        return result

    def _parse_containers(self, statuses: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
        containers: dict[str, dict[str, Any]] = {}
        for container_status in statuses:
            runtime_id = container_status.get("containerID")
            if not runtime_id:
                # Not started yet; no id to key on.
                continue
            container_id = _RUNTIME_PREFIX.sub("", str(runtime_id))
            entry: dict[str, Any] = {"name": container_status.get("name")}
            if not self._skip_container_metadata:
                entry["image"] = container_status.get("image")
                entry["image_id"] = container_status.get("imageID")
                entry["container_runtime_id"] = runtime_id
            containers[container_id] = entry
        return containers


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _str_dict(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {str(k): str(v) for k, v in raw.items()}


def _owner_refs(refs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    result = []
    for ref in refs:
        entry = {
            "kind": ref.get("kind"),
            "name": ref.get("name"),
            "uid": ref.get("uid"),
            "controller": ref.get("controller"),
        }
        result.append({k: v for k, v in entry.items() if v is not None})
    return result
