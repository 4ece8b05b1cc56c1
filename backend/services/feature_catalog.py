"""Listing Feature Catalog - canonical plan feature keys.

Plans store their features as a free list of strings. Older plans were
created with human labels ("Logo and cover image", "Photo upload") instead of
keys, so every read goes through normalize_features() which folds both into
the canonical keys below. Unknown entries are dropped.
"""
import re
from typing import Any, Iterable, Optional, Set, Tuple, Union

# ============================================================================
# CANONICAL FEATURES - ordered as shown on the pricing page
# ============================================================================
FEATURE_OPTIONS: Tuple[Tuple[str, str], ...] = (
    ("branding", "Logo and cover image"),
    ("gallery", "Gallery images"),
    ("products", "Products"),
    ("services", "Services"),
    ("menu_items", "Menu items"),
    ("badges", "Badges"),
    ("featured_listing", "Featured listing"),
)

FEATURE_LABELS = dict(FEATURE_OPTIONS)
FEATURE_KEYS = frozenset(FEATURE_LABELS)

# ============================================================================
# LEGACY ALIASES - first match wins, order matters
# ============================================================================
LEGACY_FEATURE_ALIASES: Tuple[Tuple[str, Tuple[Union[str, re.Pattern], ...]], ...] = (
    ("branding", ("branding", "logo", "cover image", "cover")),
    ("gallery", ("gallery", "photo", "images")),
    ("products", ("product", "catalog")),
    ("services", ("service",)),
    ("menu_items", ("menu",)),
    ("badges", ("badge",)),
    ("featured_listing", ("featured",)),
)


def _matches(candidate: Union[str, re.Pattern], value: str) -> bool:
    if isinstance(candidate, str):
        return candidate in value
    return candidate.search(value) is not None


def normalize_feature_key(value: str) -> Optional[str]:
    """Map one raw feature string to a canonical key, or None."""
    normalized = value.strip().lower()
    if not normalized:
        return None

    if normalized in FEATURE_KEYS:
        return normalized

    for key, aliases in LEGACY_FEATURE_ALIASES:
        if any(_matches(alias, normalized) for alias in aliases):
            return key

    return None


def normalize_features(raw: Any) -> Set[str]:
    """
    Normalize a stored feature list into a set of canonical keys.

    Anything that is not a list/tuple yields an empty set; non-string entries
    and unrecognised labels are skipped silently.
    """
    if not isinstance(raw, (list, tuple, set, frozenset)):
        return set()

    keys = set()
    for item in raw:
        if not isinstance(item, str):
            continue
        key = normalize_feature_key(item)
        if key:
            keys.add(key)
    return keys


def feature_label(key: str) -> str:
    """Human label for a feature key; unknown keys are returned as-is."""
    return FEATURE_LABELS.get(key, key)


def is_feature_key(value: str) -> bool:
    return value in FEATURE_KEYS


def ordered_features(keys: Iterable[str]) -> list:
    """Canonical keys in catalog order (stable output for API responses)."""
    wanted = set(keys)
    return [key for key, _ in FEATURE_OPTIONS if key in wanted]
