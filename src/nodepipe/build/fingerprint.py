"""Semantic fingerprinting — self-describing, versioned hashes for cache invalidation.

A node's fingerprint covers its kind, the configuration fields its kind
declares as output-affecting, and the hashes of its direct upstream nodes, so
it transitively encodes the whole lineage. Entry hashes cover only the
content-relevant request/response fields.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

NODE_SCHEME = "nodepipe:node:v1"

# Request fields that determine what a transform produces. Anything else on
# an ingested record (ids, timestamps, UI metadata) never reaches the hash.
ENTRY_INPUT_FIELDS = ("messages", "tool_choice", "tools", "response_format")


@dataclass(frozen=True)
class Fingerprint:
    """A self-describing, versioned hash for a node.

    Each fingerprint records its scheme (how it was generated) and its
    components (what went into it), so the driver can explain why a node
    was invalidated.
    """

    scheme: str
    digest: str  # SHA256 hex (full)
    components: dict[str, str]  # component_name -> component_hash

    def matches(self, other: Fingerprint | None) -> bool:
        """Match requires same scheme AND same digest."""
        if other is None:
            return False
        return self.scheme == other.scheme and self.digest == other.digest

    def explain_diff(self, other: Fingerprint | None) -> list[str]:
        """Human-readable list of reasons these fingerprints differ."""
        if other is None:
            return ["no stored fingerprint"]
        if self.scheme != other.scheme:
            return [f"scheme changed ({other.scheme} -> {self.scheme})"]
        all_keys = sorted(set(self.components) | set(other.components))
        changed = [k for k in all_keys if self.components.get(k) != other.components.get(k)]
        return [f"{k} changed" for k in changed] or ["unknown"]

    def to_dict(self) -> dict:
        """Serialize to a plain dict suitable for JSON storage."""
        return {
            "scheme": self.scheme,
            "digest": self.digest,
            "components": dict(self.components),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Fingerprint | None:
        """Deserialize from a dict. Returns None if data is empty/missing."""
        if not data or "scheme" not in data:
            return None
        return cls(
            scheme=data["scheme"],
            digest=data["digest"],
            components=data.get("components", {}),
        )


def canonical_json(obj: Any) -> str:
    """Serialize ``obj`` to JSON with sorted keys and no insignificant whitespace."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


def compute_digest(components: Mapping[str, str]) -> str:
    """Deterministic digest from sorted component hashes."""
    parts = "|".join(f"{k}={v}" for k, v in sorted(components.items()))
    return sha256_hex(parts)


def fingerprint_value(obj: Any) -> str:
    """Deterministic SHA256 for any JSON-compatible value.

    Python's built-in hash() is salted per process and only covers hashable
    types, so values are serialized to canonical JSON first.
    """
    return sha256_hex(canonical_json(obj))


def compute_node_fingerprint(
    node_type: str,
    hashable_config: Mapping[str, Any],
    upstream_hashes: Iterable[str | None],
) -> Fingerprint:
    """Combine a node's kind, relevant config and upstream hashes.

    Upstream order is irrelevant; a parent whose hash has not been computed
    yet contributes an empty string.
    """
    components = {
        "kind": fingerprint_value(node_type),
        "config": fingerprint_value(dict(hashable_config)),
        "upstream": fingerprint_value(sorted(h or "" for h in upstream_hashes)),
    }
    return Fingerprint(
        scheme=NODE_SCHEME,
        digest=compute_digest(components),
        components=components,
    )


def entry_input_fields(record: Mapping[str, Any]) -> dict[str, Any]:
    """Project a record onto the fields that affect processing output."""
    return {
        "messages": record.get("messages") or [],
        "tool_choice": record.get("tool_choice"),
        "tools": record.get("tools") or None,
        "response_format": record.get("response_format"),
    }


def hash_entry_input(record: Mapping[str, Any]) -> str:
    """Hash the content-relevant request fields of an entry."""
    return fingerprint_value(entry_input_fields(record))


def hash_entry_output(output: Any) -> str:
    """Hash a response message."""
    return fingerprint_value(output)


def hash_prompt(model_provider: str, model_input: Any) -> str:
    """Hash a resolved prompt, used to share evaluation results between cells."""
    return fingerprint_value({"model_provider": model_provider, "model_input": model_input})


def hash_upstream_row(input_hash: str, output_hash: str | None, split: str) -> str:
    """Fingerprint of the parent row values forwarded to a child entry."""
    return fingerprint_value([input_hash, output_hash, split])
