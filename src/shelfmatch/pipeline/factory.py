"""Wire the production collaborators into a pipeline and batch executor."""

from __future__ import annotations

import os

from shelfmatch.catalog.client import CatalogClient
from shelfmatch.config import AppSettings
from shelfmatch.errors import ComparisonError
from shelfmatch.pipeline.batch import BatchExecutor
from shelfmatch.pipeline.orchestrator import MatchPipeline
from shelfmatch.storage.store import MatchStore
from shelfmatch.vision.comparison import GeminiComparator


def build_pipeline(settings: AppSettings, store: MatchStore) -> MatchPipeline:
    """Create a pipeline backed by the HTTP catalog and Gemini comparator."""
    api_key = os.getenv(settings.comparison.api_key_env, "")
    if not api_key:
        raise ComparisonError(f"{settings.comparison.api_key_env} is not set")
    comparator = GeminiComparator.from_settings(
        settings.comparison,
        api_key=api_key,
        pass_threshold=settings.matching.visual_pass_threshold,
    )
    catalog = CatalogClient.from_settings(settings.catalog)
    return MatchPipeline(catalog=catalog, comparator=comparator, store=store, settings=settings.matching)


def build_executor(settings: AppSettings, pipeline: MatchPipeline) -> BatchExecutor:
    return BatchExecutor(
        pipeline,
        max_concurrency=settings.batch.max_concurrency,
        default_concurrency=settings.batch.default_concurrency,
    )
