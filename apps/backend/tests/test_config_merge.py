import pytest

from estate_photos.config import (
    EnhancementParams,
    ResourceLimits,
    RetryPolicy,
    deep_merge,
    load_settings,
    merge_enhancement_params,
    resolve_profile,
)
from estate_photos.errors import ConfigurationError, ParameterOutOfRange
from estate_photos.pipeline.types import Region, SceneType


def test_deep_merge_nested() -> None:
    merged = deep_merge({"retry": {"retry_budget": 3, "backoff_max_s": 8.0}}, {"retry": {"retry_budget": 1}})

    assert merged == {"retry": {"retry_budget": 1, "backoff_max_s": 8.0}}


def test_merge_enhancement_params() -> None:
    params = EnhancementParams()

    updated = merge_enhancement_params(params, {"saturation": 1.5, "scene_type": "exterior"})

    assert updated.saturation == 1.5
    assert updated.scene_type is SceneType.EXTERIOR
    assert params.saturation == 1.0


def test_merge_rejects_out_of_range_value() -> None:
    with pytest.raises(ParameterOutOfRange) as excinfo:
        merge_enhancement_params(EnhancementParams(), {"contrast": 3.0})

    assert excinfo.value.name == "contrast"
    assert (excinfo.value.low, excinfo.value.high) == (0.5, 2.0)


def test_resolve_profile_applies_regional_deltas_and_overrides() -> None:
    thai = resolve_profile(Region.THAILAND, SceneType.INTERIOR)

    assert thai.region is Region.THAILAND
    assert thai.white_balance_temperature == pytest.approx(-11.0)
    assert thai.highlights == pytest.approx(0.4)
    assert thai.saturation == pytest.approx(1.05)

    overridden = resolve_profile("uae", "exterior", {"sharpness": 1.2})
    assert overridden.sharpness == 1.2
    assert overridden.highlights == pytest.approx(0.6)


def test_load_settings_rejects_bad_configuration() -> None:
    with pytest.raises(ConfigurationError):
        load_settings({"thresholds": {"min_width": 5000, "max_width": 100}})
    with pytest.raises(ConfigurationError):
        load_settings({"regional_adjustments": {"uae": {"highlights": 0.9}}})
    with pytest.raises(ConfigurationError):
        load_settings({"limits": {"max_concurrent_processing": 0}})


def test_environment_defaults(monkeypatch) -> None:
    monkeypatch.setenv("MAX_CONCURRENT_PROCESSING", "7")
    monkeypatch.setenv("RETRY_BUDGET", "5")

    assert ResourceLimits().max_concurrent_processing == 7
    assert RetryPolicy().retry_budget == 5


def test_backoff_is_exponential_and_capped() -> None:
    policy = RetryPolicy(backoff_base_s=0.5, backoff_max_s=8.0)

    assert [policy.delay_for(attempt) for attempt in range(6)] == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]
