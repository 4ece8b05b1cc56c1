"""
Feature catalog tests: canonical keys, legacy label aliases, ordering.
"""
import pytest

from services.feature_catalog import (
    FEATURE_KEYS,
    feature_label,
    is_feature_key,
    normalize_feature_key,
    normalize_features,
    ordered_features,
)


class TestNormalizeFeatureKey:
    """Single raw strings map to canonical keys."""

    def test_canonical_keys_pass_through(self):
        for key in FEATURE_KEYS:
            assert normalize_feature_key(key) == key

    def test_case_and_whitespace_ignored(self):
        assert normalize_feature_key("  GALLERY ") == "gallery"

    @pytest.mark.parametrize("raw,expected", [
        ("Logo and cover image", "branding"),
        ("Cover photo", "branding"),
        ("Photo upload", "gallery"),
        ("Product catalog", "products"),
        ("Service list", "services"),
        ("Menu items", "menu_items"),
        ("Trust badge", "badges"),
        ("Featured listing", "featured_listing"),
    ])
    def test_legacy_labels(self, raw, expected):
        assert normalize_feature_key(raw) == expected

    def test_first_alias_wins(self):
        """'cover' (branding) is checked before 'photo' (gallery)."""
        assert normalize_feature_key("cover photo gallery") == "branding"

    def test_unknown_and_blank(self):
        assert normalize_feature_key("priority support") is None
        assert normalize_feature_key("   ") is None


class TestNormalizeFeatures:
    """Whole stored feature lists."""

    def test_mixed_list_deduplicates(self):
        raw = ["gallery", "Photo upload", "Products", "unknown thing"]
        assert normalize_features(raw) == {"gallery", "products"}

    def test_non_list_yields_empty(self):
        assert normalize_features(None) == set()
        assert normalize_features("gallery") == set()
        assert normalize_features({"gallery": True}) == set()

    def test_non_string_entries_skipped(self):
        assert normalize_features([1, None, "badges"]) == {"badges"}


class TestLabelsAndOrder:

    def test_label_lookup(self):
        assert feature_label("menu_items") == "Menu items"
        assert feature_label("nope") == "nope"

    def test_is_feature_key(self):
        assert is_feature_key("featured_listing") is True
        assert is_feature_key("Featured listing") is False

    def test_ordered_features_follow_catalog(self):
        assert ordered_features({"badges", "branding", "gallery"}) == ["branding", "gallery", "badges"]


class TestNormalizationIdempotence:

    def test_canonical_keys_round_trip_as_set(self):
        keys = ["products", "gallery", "products", "badges"]
        assert normalize_features(keys) == {"products", "gallery", "badges"}

    def test_label_and_key_collapse(self):
        assert normalize_features(["Gallery", "gallery", "photo upload"]) == {"gallery"}
