"""Tests for configuration profiles."""

import pytest

from diffraction_atlas.profiles import (
    PROFILES,
    PipelineConfig,
    apply_overrides,
    get_profile,
    list_profiles,
    profile_help,
)


class TestProfiles:
    """Tests for profile lookup."""

    def test_builtin_names(self):
        """Test that the built-in profiles are listed."""
        assert list_profiles() == ["default", "fast", "fine", "noisy"]

    def test_get_profile_copy(self):
        """Test that a fetched profile can be changed without touching the registry."""
        profile = get_profile("default")
        profile.radius.min_radius = 42
        assert PROFILES["default"].radius.min_radius != 42

    def test_unknown_profile(self):
        """Test that an unknown profile name is rejected."""
        with pytest.raises(ValueError, match="Unknown profile"):
            get_profile("ultra")

    def test_fast_skips_symmetry(self):
        """Test that the fast profile disables the symmetry check and condenser fit."""
        assert not get_profile("fast").symmetry.enabled
        assert not get_profile("fast").condenser.enabled
        assert get_profile("default").condenser.enabled
        assert get_profile("default").symmetry.enabled

    def test_help_mentions_every_profile(self):
        """Test that the help text names each profile."""
        text = profile_help()
        for name in list_profiles():
            assert name in text


class TestOverrides:
    """Tests for dotted-key overrides."""

    def test_section_override(self):
        """Test that a section field is overridden."""
        config = apply_overrides(get_profile("default"), {"radius.min_radius": 5, "spots.noise_floor": 0.4})
        assert config.radius.min_radius == 5
        assert config.spots.noise_floor == 0.4

    def test_top_level_override(self):
        """Test that a top-level field is overridden."""
        config = apply_overrides(get_profile("default"), {"threads": 8})
        assert config.threads == 8

    def test_none_skipped(self):
        """Test that None leaves the profile value in place."""
        config = apply_overrides(get_profile("fast"), {"radius.max_images": None})
        assert config.radius.max_images == 4

    def test_unknown_key(self):
        """Test that unknown sections and options are rejected."""
        with pytest.raises(ValueError):
            apply_overrides(get_profile("default"), {"radius.bogus": 1})
        with pytest.raises(ValueError):
            apply_overrides(get_profile("default"), {"nothing.min_radius": 1})

    def test_returns_same_object(self):
        """Test that the configuration is updated in place."""
        config = get_profile("default")
        assert isinstance(config, PipelineConfig)
        assert apply_overrides(config, {}) is config
