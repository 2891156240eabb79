"""Tests for the fingerprint module — node fingerprints and content hashes."""

from __future__ import annotations

from nodepipe.build.fingerprint import (
    NODE_SCHEME,
    Fingerprint,
    canonical_json,
    compute_digest,
    compute_node_fingerprint,
    hash_entry_input,
    hash_entry_output,
    hash_prompt,
    hash_upstream_row,
)


class TestFingerprint:
    """Tests for the Fingerprint dataclass."""

    def test_matches_same(self):
        fp = Fingerprint(scheme=NODE_SCHEME, digest="abc123", components={"a": "1"})
        assert fp.matches(fp) is True

    def test_matches_different_scheme(self):
        """Different scheme means no match, even with same digest."""
        fp1 = Fingerprint(scheme="nodepipe:node:v1", digest="abc123", components={"a": "1"})
        fp2 = Fingerprint(scheme="nodepipe:node:v2", digest="abc123", components={"a": "1"})
        assert fp1.matches(fp2) is False

    def test_matches_none(self):
        fp = Fingerprint(scheme=NODE_SCHEME, digest="abc123", components={})
        assert fp.matches(None) is False

    def test_explain_diff_component_changed(self):
        """Diff identifies which components changed."""
        fp1 = Fingerprint(scheme=NODE_SCHEME, digest="aaa", components={"config": "new", "kind": "same"})
        fp2 = Fingerprint(scheme=NODE_SCHEME, digest="bbb", components={"config": "old", "kind": "same"})
        assert fp1.explain_diff(fp2) == ["config changed"]

    def test_round_trip_dict(self):
        fp = compute_node_fingerprint("LLMRelabel", {"relabel_llm": "gpt-4o"}, ["p1"])
        assert Fingerprint.from_dict(fp.to_dict()) == fp

    def test_from_dict_empty(self):
        assert Fingerprint.from_dict({}) is None


class TestComputeNodeFingerprint:
    def test_deterministic(self):
        """Same kind, config and upstream produce the same digest."""
        a = compute_node_fingerprint("LLMRelabel", {"relabel_llm": "gpt-4o"}, ["h1", "h2"])
        b = compute_node_fingerprint("LLMRelabel", {"relabel_llm": "gpt-4o"}, ["h1", "h2"])
        assert a.digest == b.digest
        assert a.scheme == NODE_SCHEME

    def test_upstream_order_irrelevant(self):
        a = compute_node_fingerprint("Dataset", {}, ["h1", "h2"])
        b = compute_node_fingerprint("Dataset", {}, ["h2", "h1"])
        assert a.digest == b.digest

    def test_config_change_changes_digest(self):
        a = compute_node_fingerprint("LLMRelabel", {"relabel_llm": "gpt-4o"}, ["h1"])
        b = compute_node_fingerprint("LLMRelabel", {"relabel_llm": "gpt-4o-mini"}, ["h1"])
        assert a.digest != b.digest
        assert b.explain_diff(a) == ["config changed"]

    def test_upstream_change_changes_digest(self):
        a = compute_node_fingerprint("Dataset", {}, ["h1"])
        b = compute_node_fingerprint("Dataset", {}, ["h2"])
        assert a.digest != b.digest
        assert b.explain_diff(a) == ["upstream changed"]

    def test_kind_is_hashed(self):
        a = compute_node_fingerprint("Dataset", {}, ["h1"])
        b = compute_node_fingerprint("ManualRelabel", {}, ["h1"])
        assert a.digest != b.digest

    def test_missing_upstream_hash_treated_as_empty(self):
        a = compute_node_fingerprint("Dataset", {}, [None])
        b = compute_node_fingerprint("Dataset", {}, [""])
        assert a.digest == b.digest

    def test_digest_matches_components(self):
        fp = compute_node_fingerprint("Dataset", {}, [])
        assert fp.digest == compute_digest(fp.components)


class TestEntryHashes:
    def test_identical_fields_identical_hash(self):
        record = {"messages": [{"role": "user", "content": "hi"}], "tool_choice": "auto"}
        assert hash_entry_input(record) == hash_entry_input(dict(record))

    def test_missing_and_none_fields_hash_identically(self):
        messages = [{"role": "user", "content": "hi"}]
        assert hash_entry_input({"messages": messages}) == hash_entry_input(
            {"messages": messages, "tools": None, "tool_choice": None, "response_format": None}
        )

    def test_empty_tools_same_as_missing(self):
        messages = [{"role": "user", "content": "hi"}]
        assert hash_entry_input({"messages": messages, "tools": []}) == hash_entry_input({"messages": messages})

    def test_irrelevant_fields_ignored(self):
        messages = [{"role": "user", "content": "hi"}]
        assert hash_entry_input({"messages": messages, "id": "x", "created": 1}) == hash_entry_input(
            {"messages": messages}
        )

    def test_key_order_irrelevant(self):
        a = {"messages": [{"role": "user", "content": "hi"}], "response_format": {"type": "json_object"}}
        b = {"response_format": {"type": "json_object"}, "messages": [{"content": "hi", "role": "user"}]}
        assert hash_entry_input(a) == hash_entry_input(b)

    def test_different_messages_differ(self):
        a = hash_entry_input({"messages": [{"role": "user", "content": "hi"}]})
        b = hash_entry_input({"messages": [{"role": "user", "content": "hello"}]})
        assert a != b

    def test_output_hash(self):
        assert hash_entry_output({"role": "assistant", "content": "x"}) == hash_entry_output(
            {"content": "x", "role": "assistant"}
        )

    def test_prompt_hash_includes_provider(self):
        model_input = {"model": "m", "messages": []}
        assert hash_prompt("openai", model_input) != hash_prompt("anthropic", model_input)

    def test_upstream_row_hash_covers_split(self):
        assert hash_upstream_row("i", "o", "TRAIN") != hash_upstream_row("i", "o", "TEST")

    def test_canonical_json_compact_sorted(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
