"""Tests for diff normalization."""

import os
from unittest.mock import patch

from provisioner.normalizer import (
    DiffNormalizer,
    NormalizationConfig,
    NormalizationRule,
    NormalizationType,
)

REGISTRY = "azure:containerregistry:Registry"
CONTAINER_GROUP = "azure:containerinstance:ContainerGroup"
IMAGE = "docker-build:Image"


class TestNormalizationRule:
    """Tests for rule matching."""

    def test_exact_match(self) -> None:
        rule = NormalizationRule(
            kind=REGISTRY,
            path_pattern="sku.name",
            normalization_type=NormalizationType.CASE_INSENSITIVE,
        )
        assert rule.matches(REGISTRY, "sku.name")
        assert not rule.matches(CONTAINER_GROUP, "sku.name")

    def test_kind_wildcard(self) -> None:
        rule = NormalizationRule(
            kind="azure:**",
            path_pattern="location",
            normalization_type=NormalizationType.CASE_INSENSITIVE,
        )
        assert rule.matches(REGISTRY, "location")
        assert not rule.matches(IMAGE, "location")

    def test_double_star_path(self) -> None:
        rule = NormalizationRule(
            kind="*",
            path_pattern="**.port",
            normalization_type=NormalizationType.NUMERIC_STRING,
        )
        assert rule.matches(CONTAINER_GROUP, "containers.0.ports.0.port")
        assert rule.matches(CONTAINER_GROUP, "ipAddress.ports.1.port")


class TestDiffNormalizer:
    """Tests for default normalization behavior."""

    def test_location_case(self) -> None:
        """Test Azure regions compare case-insensitively."""
        normalizer = DiffNormalizer()
        assert normalizer.are_equivalent("WestEurope", "westeurope", REGISTRY, "location")

    def test_empty_tags(self) -> None:
        """Test empty and missing tags are equivalent."""
        normalizer = DiffNormalizer()
        assert normalizer.are_equivalent(None, {}, REGISTRY, "tags")

    def test_numeric_port(self) -> None:
        """Test string and integer ports are equivalent."""
        normalizer = DiffNormalizer()
        assert normalizer.are_equivalent(
            "8080", 8080, CONTAINER_GROUP, "containers.0.ports.0.port"
        )

    def test_default_restart_policy(self) -> None:
        """Test an omitted restart policy equals the default."""
        normalizer = DiffNormalizer()
        assert normalizer.are_equivalent(None, "Always", CONTAINER_GROUP, "restartPolicy")
        assert not normalizer.are_equivalent(None, "Never", CONTAINER_GROUP, "restartPolicy")

    def test_unordered_platforms(self) -> None:
        """Test build platform order is irrelevant."""
        normalizer = DiffNormalizer()
        assert normalizer.are_equivalent(
            ["linux/arm64", "linux/amd64"], ["linux/amd64", "linux/arm64"], IMAGE, "platforms"
        )
        assert normalizer.has_rule(IMAGE, "platforms", NormalizationType.ARRAY_UNORDERED)

    def test_unrelated_path_untouched(self) -> None:
        """Test values without a rule compare strictly."""
        normalizer = DiffNormalizer()
        assert not normalizer.are_equivalent("A", "a", REGISTRY, "name")

    def test_custom_rules_only(self) -> None:
        """Test default rules can be disabled."""
        rule = NormalizationRule(
            kind="*",
            path_pattern="name",
            normalization_type=NormalizationType.CASE_INSENSITIVE,
        )
        normalizer = DiffNormalizer(rules=[rule], enable_default_rules=False)

        assert normalizer.rules == [rule]
        assert normalizer.are_equivalent("A", "a", REGISTRY, "name")
        assert not normalizer.are_equivalent("WestEurope", "westeurope", REGISTRY, "location")


class TestNormalizationConfig:
    """Tests for NormalizationConfig."""

    def test_from_env_default(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            config = NormalizationConfig.from_env()
        assert config.enable_default_rules is True

    def test_from_env_disabled(self) -> None:
        with patch.dict(os.environ, {"PROVISIONER_DEFAULT_NORMALIZATION": "false"}, clear=True):
            normalizer = NormalizationConfig.from_env().build()
        assert normalizer.rules == []
