from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from fakes import FakeCatalog, FakeComparator
from shelfmatch.config import MatchingSettings
from shelfmatch.pipeline.orchestrator import MatchPipeline
from shelfmatch.storage.store import MatchStore


@pytest.fixture
def store(tmp_path: Path) -> MatchStore:
    return MatchStore(tmp_path / "shelfmatch.db")


@pytest.fixture
def pipeline_factory(store: MatchStore) -> Callable[..., MatchPipeline]:
    def build(
        catalog: FakeCatalog,
        comparator: FakeComparator | None = None,
        settings: MatchingSettings | None = None,
    ) -> MatchPipeline:
        return MatchPipeline(
            catalog=catalog,
            comparator=comparator or FakeComparator(),
            store=store,
            settings=settings,
        )

    return build
