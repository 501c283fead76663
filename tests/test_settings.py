from __future__ import annotations

from config import (
    ImageSettings,
    OrchestratorSettings,
    Settings,
    TextSettings,
    get_feed_settings,
    get_image_settings,
    get_orchestrator_settings,
    get_settings,
)
from utils.exceptions import ExportRejectedError, GatewayError, NewsDeskError


def test_defaults_match_run_timings() -> None:
    orchestrator = OrchestratorSettings()
    image = ImageSettings()

    assert orchestrator.status_interval == 2
    assert orchestrator.fast_verify_interval == 1
    assert orchestrator.run_timeout == 300
    assert image.initial_backoff == 1
    assert image.backoff_factor == 1.6
    assert image.max_backoff == 15
    assert image.max_attempts == 12
    assert TextSettings().return_limit == 400


def test_env_prefix_overrides(monkeypatch) -> None:
    monkeypatch.setenv("ORCHESTRATOR_RUN_TIMEOUT", "30")
    monkeypatch.setenv("TEXT_STEMMER", "none")

    assert OrchestratorSettings().run_timeout == 30
    assert TextSettings().stemmer == "none"


def test_load_from_missing_env_file(tmp_path) -> None:
    settings = Settings.load_from_env_file(tmp_path / "absent.env")
    assert settings.scoring.top_k == 20
    assert settings.pipeline.selection_file == "selection-from-pipeline.json"


def test_exception_details_render() -> None:
    err = GatewayError("status failed", endpoint="/api/pipeline-status", status_code=502)
    assert isinstance(err, NewsDeskError)
    assert err.status_code == 502
    assert str(err) == "status failed"

    rejected = ExportRejectedError("bad ids", invalid_indexes=[0, 2], run="tok")
    assert rejected.invalid_indexes == [0, 2]
    assert "tok" in str(rejected)


def test_accessors_share_the_cached_settings() -> None:
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert get_settings() is settings
        assert get_orchestrator_settings() is settings.orchestrator
        assert get_image_settings() is settings.image
        assert get_feed_settings() is settings.feed
    finally:
        get_settings.cache_clear()
