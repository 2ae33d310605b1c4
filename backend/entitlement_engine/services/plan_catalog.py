"""
Plan catalog and price identifier map.

WHAT: Loads plan definitions from plans.json, reads per-plan feature limits
from settings, and maps provider price ids to (plan name, interval).

WHY: Plans are configuration, not data:
1. Prices and names change with marketing, so they live in a file
2. Limits are tuned per deployment, so they come from environment variables
3. Price ids differ per provider account (test vs live), so each plan names
   the setting that holds its price id rather than the id itself

HOW:
- PlanCatalog validates plans.json with pydantic at load time
- Plan names are "<base>" for monthly and "<base>_annual" for yearly; the
  interval always derives from the suffix
- PriceIdentifierMap reads price ids from settings on every lookup, so
  changed env (and monkeypatched tests) take effect without a reload
- An unknown price id is a hard ConfigurationError, never a default plan
"""

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from entitlement_engine.core.config import Settings, settings
from entitlement_engine.core.exceptions import (
    ConfigurationError,
    PlanNotFoundError,
    UnknownPriceError,
)
from entitlement_engine.models.plan import BillingInterval


logger = logging.getLogger(__name__)


ANNUAL_SUFFIX = "_annual"


# ============================================================================
# Feature limits
# ============================================================================


class Feature(str, Enum):
    """Features with a countable plan limit."""

    WORKSPACES = "workspaces"
    PROJECTS_PER_WORKSPACE = "projects_per_workspace"
    FILES_PER_PROJECT = "files_per_project"
    TEAM_MEMBERS = "team_members"
    STORAGE_GB = "storage_gb"
    FILE_SIZE_MB = "file_size_mb"


@dataclass(frozen=True)
class FeatureLimit:
    """
    Limit for a single feature.

    unlimited overrides max; max is meaningless when unlimited is True.
    """

    max: int
    unlimited: bool = False

    def allows(self, current_usage: float) -> bool:
        """Check whether one more unit fits: usage must be strictly below max."""
        return self.unlimited or current_usage < self.max

    @property
    def reported_limit(self) -> int:
        """Limit as shown to clients, -1 meaning unlimited."""
        return -1 if self.unlimited else self.max

    def to_dict(self) -> Dict[str, Any]:
        return {"max": self.max, "unlimited": self.unlimited}


@dataclass(frozen=True)
class FeatureLimits:
    """Per-feature limits of a plan."""

    limits: Dict[Feature, FeatureLimit] = field(default_factory=dict)

    def get(self, feature: Feature) -> FeatureLimit:
        """
        Get the limit for a feature.

        Raises:
            ConfigurationError: If the plan defines no limit for the feature
        """
        try:
            return self.limits[feature]
        except KeyError:
            raise ConfigurationError(
                f"No limit configured for feature '{feature.value}'",
                feature=feature.value,
            )

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        """Serialize for the plans.feature_limits JSON column and API responses."""
        return {feature.value: limit.to_dict() for feature, limit in self.limits.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Dict[str, Any]]) -> "FeatureLimits":
        """Rebuild limits stored on a plan row; unknown feature keys are ignored."""
        limits = {}
        for feature in Feature:
            raw = data.get(feature.value)
            if raw is not None:
                limits[feature] = FeatureLimit(
                    max=int(raw.get("max", 0)),
                    unlimited=bool(raw.get("unlimited", False)),
                )
        return cls(limits=limits)


# ============================================================================
# plans.json schema
# ============================================================================


class PlanPricing(BaseModel):
    """Price of a plan for one billing interval."""

    price: Decimal = Field(..., ge=0)
    currency: str = Field("usd", min_length=3, max_length=3)
    price_id_setting: Optional[str] = None


class PlanPricingSet(BaseModel):
    monthly: PlanPricing
    yearly: PlanPricing


class PlanConfig(BaseModel):
    """One base plan as declared in plans.json."""

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    description: Optional[str] = None
    pricing: PlanPricingSet
    is_active: bool = True
    sort_order: float = 0


class PlanCatalogFile(BaseModel):
    plans: List[PlanConfig]


@dataclass(frozen=True)
class PlanDefinition:
    """
    Everything needed to materialize one plan row.

    WHY: Decouples the materializer from the catalog's file layout; it only
    sees a flat, interval-specific definition.
    """

    name: str
    display_name: str
    description: Optional[str]
    price: Decimal
    currency: str
    billing_interval: BillingInterval
    feature_limits: FeatureLimits
    is_active: bool
    sort_order: float
    price_id: Optional[str]

    @property
    def is_paid(self) -> bool:
        return self.price > 0


@dataclass(frozen=True)
class ResolvedPrice:
    """Result of resolving a provider price id."""

    plan_name: str
    billing_interval: BillingInterval


def split_plan_name(plan_name: str) -> Tuple[str, BillingInterval]:
    """
    Split a plan name into its base plan and billing interval.

    Example:
        split_plan_name("pro_annual") -> ("pro", BillingInterval.YEARLY)
    """
    if plan_name.endswith(ANNUAL_SUFFIX):
        return plan_name[: -len(ANNUAL_SUFFIX)], BillingInterval.YEARLY
    return plan_name, BillingInterval.MONTHLY


def plan_name_for(base_name: str, billing_interval: BillingInterval) -> str:
    """Inverse of split_plan_name."""
    if billing_interval == BillingInterval.YEARLY:
        return f"{base_name}{ANNUAL_SUFFIX}"
    return base_name


# ============================================================================
# Catalog
# ============================================================================


class PlanCatalog:
    """
    Config-backed plan definitions.

    Example:
        catalog = PlanCatalog.from_file("plans.json")
        definition = catalog.plan_definition("pro_annual")
    """

    def __init__(self, plans: List[PlanConfig], config: Optional[Settings] = None):
        self._plans = {plan.name: plan for plan in plans}
        self._settings = config or settings

    @classmethod
    def from_file(cls, path: str, config: Optional[Settings] = None) -> "PlanCatalog":
        """
        Load and validate a catalog file.

        Raises:
            ConfigurationError: If the file is missing or fails validation
        """
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
            parsed = PlanCatalogFile.model_validate(raw)
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            logger.error(f"Failed to load plan catalog from {path}: {e}")
            raise ConfigurationError("Plan catalog could not be loaded", path=str(path))

        logger.info(
            f"Loaded plan catalog with {len(parsed.plans)} plans",
            extra={"plans": [plan.name for plan in parsed.plans]},
        )
        return cls(parsed.plans, config=config)

    @property
    def settings(self) -> Settings:
        return self._settings

    def get_plan_config(self, base_name: str) -> PlanConfig:
        """
        Get a base plan's configuration.

        Raises:
            PlanNotFoundError: If the catalog has no such plan
        """
        plan = self._plans.get(base_name)
        if plan is None:
            raise PlanNotFoundError(f"Plan '{base_name}' is not in the catalog", plan=base_name)
        return plan

    def has_plan(self, plan_name: str) -> bool:
        base_name, _ = split_plan_name(plan_name)
        return base_name in self._plans

    def active_plans(self) -> List[PlanConfig]:
        """Active base plans in display order."""
        return sorted(
            (plan for plan in self._plans.values() if plan.is_active),
            key=lambda plan: plan.sort_order,
        )

    def limits_for(self, base_name: str) -> FeatureLimits:
        """
        Read a base plan's feature limits from settings.

        WHAT: For each feature, reads <PLAN>_PLAN_MAX_<FEATURE> and
        <PLAN>_PLAN_<FEATURE>_UNLIMITED.

        WHY: Limits are per-deployment tuning, so they come from env rather
        than plans.json. A plan without limit settings is a config error,
        since falling back to zero would lock users out silently.

        Raises:
            ConfigurationError: If a max setting is missing or negative
        """
        prefix = f"{base_name.upper()}_PLAN"
        limits = {}
        for feature in Feature:
            key = feature.value.upper()
            max_value = getattr(self._settings, f"{prefix}_MAX_{key}", None)
            unlimited = bool(getattr(self._settings, f"{prefix}_{key}_UNLIMITED", False))
            if max_value is None:
                raise ConfigurationError(
                    f"Missing limit setting {prefix}_MAX_{key}",
                    plan=base_name,
                    feature=feature.value,
                )
            if int(max_value) < 0:
                raise ConfigurationError(
                    f"Limit setting {prefix}_MAX_{key} must not be negative",
                    plan=base_name,
                    feature=feature.value,
                )
            limits[feature] = FeatureLimit(max=int(max_value), unlimited=unlimited)
        return FeatureLimits(limits=limits)

    def price_id_for(self, plan_name: str) -> Optional[str]:
        """Get the provider price id configured for a plan name, if any."""
        base_name, interval = split_plan_name(plan_name)
        plan = self.get_plan_config(base_name)
        pricing = self._pricing(plan, interval)
        if not pricing.price_id_setting:
            return None
        return getattr(self._settings, pricing.price_id_setting, None) or None

    def plan_definition(self, plan_name: str) -> PlanDefinition:
        """
        Build the materializable definition of a plan name.

        WHY: Annual variants are not listed separately in plans.json. They
        are derived here: yearly price, "<X> Annual" display name, and a sort
        order just after the monthly plan.

        Raises:
            PlanNotFoundError: If the base plan is not in the catalog
            ConfigurationError: If its limits are not configured
        """
        base_name, interval = split_plan_name(plan_name)
        plan = self.get_plan_config(base_name)
        pricing = self._pricing(plan, interval)

        display_name = plan.display_name
        sort_order = plan.sort_order
        if interval == BillingInterval.YEARLY:
            display_name = f"{plan.display_name} Annual"
            sort_order = plan.sort_order + 0.5

        return PlanDefinition(
            name=plan_name,
            display_name=display_name,
            description=plan.description,
            price=pricing.price,
            currency=pricing.currency,
            billing_interval=interval,
            feature_limits=self.limits_for(base_name),
            is_active=plan.is_active,
            sort_order=sort_order,
            price_id=self.price_id_for(plan_name),
        )

    def iter_price_settings(self):
        """Yield (plan_name, interval, price_id_setting) for every priced plan."""
        for plan in self._plans.values():
            for interval in (BillingInterval.MONTHLY, BillingInterval.YEARLY):
                pricing = self._pricing(plan, interval)
                if pricing.price_id_setting:
                    yield plan_name_for(plan.name, interval), interval, pricing.price_id_setting

    @staticmethod
    def _pricing(plan: PlanConfig, interval: BillingInterval) -> PlanPricing:
        if interval == BillingInterval.YEARLY:
            return plan.pricing.yearly
        return plan.pricing.monthly


# ============================================================================
# Price identifier map
# ============================================================================


class PriceIdentifierMap:
    """
    Maps opaque provider price ids to plan names and back.

    Example:
        price_map = PriceIdentifierMap(catalog)
        price_map.resolve_plan_by_price_id("price_123")
        # ResolvedPrice(plan_name="pro_annual", billing_interval=YEARLY)
    """

    def __init__(self, catalog: PlanCatalog):
        self.catalog = catalog

    def resolve_plan_by_price_id(self, price_id: Optional[str]) -> ResolvedPrice:
        """
        Resolve a provider price id.

        Raises:
            UnknownPriceError: If no plan's configured price id matches
        """
        if price_id:
            for plan_name, interval, setting_name in self.catalog.iter_price_settings():
                if getattr(self.catalog.settings, setting_name, None) == price_id:
                    return ResolvedPrice(plan_name=plan_name, billing_interval=interval)

        logger.error(
            f"Unknown price id: {price_id!r}",
            extra={"price_id": price_id},
        )
        raise UnknownPriceError(
            f"Price id '{price_id}' does not map to any configured plan",
            price_id=price_id,
        )

    def price_id_for(self, plan_name: str) -> Optional[str]:
        """Get the provider price id for a plan name (None for free plans)."""
        return self.catalog.price_id_for(plan_name)


# Singleton catalog, loaded on first use
_plan_catalog: Optional[PlanCatalog] = None


def get_plan_catalog() -> PlanCatalog:
    """Get or load the plan catalog from PLANS_CONFIG_PATH."""
    global _plan_catalog
    if _plan_catalog is None:
        _plan_catalog = PlanCatalog.from_file(settings.PLANS_CONFIG_PATH)
    return _plan_catalog