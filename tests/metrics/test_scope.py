"""
Tests for analysis scopes.
"""

import pytest

from src.core.errors import InvalidScope
from src.metrics.scope import Scope, ScopeLevel, escape_label_value


class TestScope:
    """Tests for Scope validation and label matchers."""

    def test_cluster_has_no_matchers(self):
        scope = Scope()

        assert scope.matchers() == []
        assert scope.selector() == ""
        assert scope.describe() == "cluster"

    def test_namespace(self):
        scope = Scope(level=ScopeLevel.NAMESPACE, namespace="shop")

        assert scope.selector() == 'namespace="shop"'
        assert scope.describe() == "namespace/shop"

    def test_deployment_matches_replicaset_pods(self):
        scope = Scope(level=ScopeLevel.DEPLOYMENT, namespace="shop", deployment="checkout")

        assert scope.matchers() == [
            'namespace="shop"',
            'pod=~"checkout-[a-z0-9]+-[a-z0-9]+"',
        ]

    def test_pod(self, pod_scope):
        assert pod_scope.selector('container!=""') == (
            'namespace="shop",pod="checkout-7d9f8b6c4d-x2k9p",container!=""'
        )

    def test_label_selector_is_sorted(self):
        scope = Scope(level=ScopeLevel.LABEL_SELECTOR, labels={"tier": "web", "app": "shop"})

        assert scope.matchers() == ['app="shop"', 'tier="web"']

    def test_label_values_are_escaped(self):
        assert escape_label_value('a"b\\c') == 'a\\"b\\\\c'

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"level": ScopeLevel.NAMESPACE},
            {"level": ScopeLevel.NAMESPACE, "namespace": "Bad_Name"},
            {"level": ScopeLevel.DEPLOYMENT, "namespace": "shop"},
            {"level": ScopeLevel.POD, "namespace": "shop", "pod": 'x"}'},
            {"level": ScopeLevel.LABEL_SELECTOR},
            {"level": ScopeLevel.LABEL_SELECTOR, "labels": {"bad-name": "x"}},
        ],
    )
    def test_invalid_scopes(self, kwargs):
        with pytest.raises(InvalidScope):
            Scope(**kwargs)

    def test_from_dict(self):
        scope = Scope.from_dict({"level": "pod", "namespace": "shop", "pod": "web-1"})

        assert scope.level is ScopeLevel.POD
        assert scope.describe() == "pod/shop/web-1"

    def test_from_dict_unknown_level(self):
        with pytest.raises(InvalidScope, match="Unknown scope level"):
            Scope.from_dict({"level": "galaxy"})
