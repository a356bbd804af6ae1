"""
Feature catalog configuration.

Maps feature IDs to their access level and the product that unlocks them.
"""

from collections.abc import Iterable

from entitlement_engine.models.domain import FeatureDefinition, FeatureLevel

# Default catalog (must match the products configured in the platform stores)
DEFAULT_FEATURES: tuple[FeatureDefinition, ...] = (
    FeatureDefinition(
        id="basic_search",
        level=FeatureLevel.FREE,
        name="Basic Search",
        description="Search functionality available to all users",
    ),
    FeatureDefinition(
        id="view_history",
        level=FeatureLevel.FREE,
        name="View History",
        description="View basic usage history",
    ),
    FeatureDefinition(
        id="advanced_search",
        level=FeatureLevel.PREMIUM,
        name="Advanced Search",
        description="Advanced search with filters and sorting",
        required_product_id="premium_unlock",
    ),
    FeatureDefinition(
        id="export_data",
        level=FeatureLevel.PREMIUM,
        name="Export Data",
        description="Export user data to various formats",
        required_product_id="data_export",
    ),
    FeatureDefinition(
        id="advanced_analytics",
        level=FeatureLevel.PREMIUM,
        name="Advanced Analytics",
        description="Detailed analytics and reporting",
        required_product_id="premium_unlock",
    ),
)


class FeatureCatalog:
    """Immutable, in-memory feature catalog."""

    def __init__(self, definitions: Iterable[FeatureDefinition] = DEFAULT_FEATURES) -> None:
        features: dict[str, FeatureDefinition] = {}
        for definition in definitions:
            if definition.id in features:
                raise ValueError(f"Duplicate feature ID: {definition.id}")
            features[definition.id] = definition
        self._features = features

    def __len__(self) -> int:
        return len(self._features)

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self._features

    def get(self, feature_id: str) -> FeatureDefinition | None:
        """Get feature definition by ID, or None if not found."""
        return self._features.get(feature_id)

    def all(self) -> list[FeatureDefinition]:
        """Get all feature definitions (a copy)."""
        return list(self._features.values())

    def by_level(self, level: FeatureLevel) -> list[FeatureDefinition]:
        """Get features at the given access level."""
        return [f for f in self._features.values() if f.level == level]

    def for_product(self, product_id: str) -> list[FeatureDefinition]:
        """
        Get every feature a product unlocks.

        A single product may unlock several features (bundles).
        """
        return [f for f in self._features.values() if f.required_product_id == product_id]

    def required_product(self, feature_id: str) -> str | None:
        """
        Get the product that must be purchased to unlock a feature.

        Returns:
            Product ID, or None for free or unknown features
        """
        feature = self._features.get(feature_id)
        return feature.required_product_id if feature else None


default_catalog = FeatureCatalog()
