from __future__ import annotations

import pytest

from gatedci.config import DEFAULT_ARTIFACT_DIR, EngineConfig


def test_environment_values_and_overrides(tmp_path):
    config = EngineConfig.from_env(
        {"GATEDCI_WORKSPACE": str(tmp_path), "GATEDCI_MAX_WORKERS": "3", "GATEDCI_COVERAGE_URL": ""},
        max_workers=None,
    )
    assert config.max_workers == 3
    assert config.workspace == tmp_path.resolve()
    assert config.artifact_dir == tmp_path.resolve() / DEFAULT_ARTIFACT_DIR
    assert config.coverage_url is None

    moved = config.with_overrides(workspace=tmp_path / "other", max_workers=1)
    assert moved.artifact_dir == (tmp_path / "other").resolve() / DEFAULT_ARTIFACT_DIR
    assert moved.max_workers == 1


@pytest.mark.parametrize("environ, overrides", [({"GATEDCI_MAX_WORKERS": "0"}, {}), ({}, {"max_workers": 0})])
def test_max_workers_below_one_is_rejected(tmp_path, environ, overrides):
    with pytest.raises(ValueError, match="max_workers must be >= 1"):
        EngineConfig.from_env({"GATEDCI_WORKSPACE": str(tmp_path), **environ}, **overrides)
