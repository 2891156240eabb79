"""Shared test fixtures for nodepipe."""

from __future__ import annotations

import pytest
from sqlalchemy.orm import sessionmaker

from nodepipe.build.driver import PipelineDriver
from nodepipe.build.entry_store import EntryStore
from nodepipe.core.logging import PipelineLogger
from nodepipe.core.models import NodeType
from nodepipe.db.engine import create_engine_for_url, session_scope
from nodepipe.db.models import Base
from nodepipe.llm.providers import ProviderRegistry
from nodepipe.services.ingest import ingest_jsonl
from nodepipe.services.nodes import connect_nodes, create_node
from tests.helpers.pipeline import LinearPipeline, ScriptedProvider, jsonl


@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite database per test."""
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'nodepipe.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return EntryStore(session_factory)


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def providers(provider):
    return ProviderRegistry({"openai": provider})


@pytest.fixture
def driver(session_factory, providers, tmp_path):
    return PipelineDriver(
        session_factory,
        providers=providers,
        logger_factory=lambda: PipelineLogger(logs_dir=tmp_path / "logs"),
    )


@pytest.fixture
def build_pipeline(session_factory):
    """Factory creating an Archive -> LLMRelabel -> Dataset pipeline with records."""

    def _build(
        records: list[dict],
        relabel_config: dict | None = None,
        project_id: str = "project-1",
    ) -> LinearPipeline:
        with session_scope(session_factory) as session:
            archive = create_node(session, project_id, NodeType.ARCHIVE, name="archive")
            relabel = create_node(
                session,
                project_id,
                NodeType.LLM_RELABEL,
                name="relabel",
                config=relabel_config or {"relabel_llm": "gpt-4o-mini", "max_llm_concurrency": 2},
            )
            dataset = create_node(session, project_id, NodeType.DATASET, name="dataset")
            connect_nodes(session, archive.id, relabel.id)
            connect_nodes(session, relabel.id, dataset.id)
            ingest_jsonl(session, archive.id, jsonl(records))
            ids = (archive.id, relabel.id, dataset.id)
        return LinearPipeline(*ids, node_ids=list(ids))

    return _build
