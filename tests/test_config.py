"""
tests/test_config.py
======================
Environment-driven settings.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from upscaler.config import UpscalerSettings


def test_defaults(monkeypatch):
    monkeypatch.delenv("UPSCALER_DEFAULT_FAMILY", raising=False)
    settings = UpscalerSettings(_env_file=None)

    assert settings.default_family == "default"
    assert settings.default_scale is None
    assert settings.max_concurrent_jobs == 2
    assert settings.allow_random_weights is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("UPSCALER_OUTPUT_ROOT", "/srv/upscaled")
    monkeypatch.setenv("UPSCALER_DEFAULT_FAMILY", "esrgan-thick")
    monkeypatch.setenv("UPSCALER_DEFAULT_SCALE", "x4")
    monkeypatch.setenv("UPSCALER_MAX_CONCURRENT_JOBS", "4")

    settings = UpscalerSettings(_env_file=None)

    assert settings.output_root == Path("/srv/upscaled")
    assert (settings.default_family, settings.default_scale) == ("esrgan-thick", "x4")
    assert settings.max_concurrent_jobs == 4


@pytest.mark.parametrize("field,value", [("max_concurrent_jobs", 0), ("device", "tpu"), ("max_payload_mb", -1)])
def test_invalid_values_are_rejected(field, value):
    with pytest.raises(ValidationError):
        UpscalerSettings(_env_file=None, **{field: value})
