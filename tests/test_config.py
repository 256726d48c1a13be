from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from shelfmatch.config import AppSettings, MatchingSettings, load_settings


def test_missing_config_uses_defaults(tmp_path: Path) -> None:
    settings = load_settings(tmp_path / "nope.yaml")

    assert settings == AppSettings()
    assert settings.matching.prefilter_threshold == 0.85
    assert settings.batch.default_concurrency == 3
    assert settings.batch.max_concurrency == 10


def test_yaml_overrides_sections(tmp_path: Path) -> None:
    path = tmp_path / "app.yaml"
    path.write_text(
        "matching:\n"
        "  save_threshold: 0.7\n"
        "batch:\n"
        "  max_concurrency: 4\n"
        "storage:\n"
        "  db_path: /tmp/other.db\n",
        encoding="utf-8",
    )

    settings = load_settings(path)

    assert settings.matching.save_threshold == 0.7
    assert settings.matching.visual_pass_threshold == 0.7
    assert settings.batch.max_concurrency == 4
    assert settings.storage.db_path == "/tmp/other.db"


def test_shipped_default_config_loads() -> None:
    path = Path(__file__).resolve().parents[1] / "configs" / "default.yaml"

    assert load_settings(path).matching == MatchingSettings()


def test_prefilter_weights_must_sum_to_one() -> None:
    with pytest.raises(ValidationError):
        MatchingSettings(brand_weight=0.5, size_weight=0.5, retailer_weight=0.5)
