"""LLM relabel nodes — regenerate each entry's output with a model."""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field

from nodepipe.core.errors import InvariantViolation, ProviderError, ProviderRateLimited
from nodepipe.core.models import CacheMatchField, CacheWriteField, NodeEntryStatus, NodeType
from nodepipe.llm.providers import DEFAULT_PROVIDER, complete_or_raise
from nodepipe.nodes.base import NodeKind, ProcessEntryResult, TypedNode, register_kind

logger = logging.getLogger(__name__)

SKIP_RELABEL = "SKIP"


class LLMRelabelConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # Model to relabel with, or SKIP to pass outputs through unchanged
    relabel_llm: str = Field(default=SKIP_RELABEL, min_length=1)
    # Unset uses the provider registry default
    provider: str | None = None
    max_llm_concurrency: int = Field(default=2, ge=1, le=100)

    @property
    def skip(self) -> bool:
        return self.relabel_llm == SKIP_RELABEL


@register_kind
class LLMRelabelKind(NodeKind):
    """Replaces each entry's output with a fresh completion of its input.

    Results are cached by input hash under the node's hash, so switching the
    relabel model back to a previously used one reuses every completion.
    """

    node_type = NodeType.LLM_RELABEL
    config_schema = LLMRelabelConfig
    cache_match_fields = (CacheMatchField.INCOMING_INPUT_HASH,)
    cache_write_fields = (CacheWriteField.OUTGOING_OUTPUT_HASH,)
    write_cache_on_process = True
    read_batch_size = 50

    def hashable_fields(self, config: LLMRelabelConfig) -> dict:
        return {"relabel_llm": config.relabel_llm, "provider": self.provider_name(config)}

    def provider_name(self, config: LLMRelabelConfig) -> str:
        if self.providers is None:
            return config.provider or DEFAULT_PROVIDER
        return self.providers.resolve_name(config.provider)

    def concurrency(self, node: TypedNode) -> int:
        return node.config.max_llm_concurrency

    def before_processing(self, node: TypedNode, store) -> int:
        if node.config.skip:
            return store.mark_pending_processed(node.id)
        return 0

    def process_entry(self, node, entry) -> ProcessEntryResult:
        if node.config.skip:
            return ProcessEntryResult.processed()
        if self.providers is None:
            raise InvariantViolation("LLM relabel nodes need a provider registry")

        provider = self.providers.get(self.provider_name(node.config))
        model_input = {
            "model": node.config.relabel_llm,
            "messages": entry.input.get("messages") or [],
            "tools": entry.input.get("tools"),
            "tool_choice": entry.input.get("tool_choice"),
            "response_format": entry.input.get("response_format"),
        }
        try:
            response = complete_or_raise(provider, model_input)
        except ProviderRateLimited as exc:
            logger.debug("Rate limited relabeling %s", entry.persistent_id)
            return ProcessEntryResult.deferred(str(exc))
        except ProviderError as exc:
            return ProcessEntryResult.failed(str(exc))

        if not response.value:
            return ProcessEntryResult.failed("No completion returned")
        return ProcessEntryResult(
            status=NodeEntryStatus.PROCESSED,
            output=response.value,
            model_calls=1,
            tokens=(response.prompt_tokens or 0) + (response.completion_tokens or 0),
        )
