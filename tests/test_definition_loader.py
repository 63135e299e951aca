"""Tests for loading action definitions from JSON and YAML documents."""

import json

import pytest
import yaml

from commerce_agent.application.bootstrap import build_registry
from commerce_agent.domain.errors import CapabilityUnavailable, ConfigurationError
from commerce_agent.domain.models.conversation_state import Mode
from commerce_agent.domain.tool.definition_loader import load_action_document
from commerce_agent.infrastructure.config.settings import AssistantSettings


def _write_json(tmp_path, document, name="actions.json"):
    path = tmp_path / name
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


def _write_yaml(tmp_path, document, name="actions.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(document), encoding="utf-8")
    return path


class TestLoadActionDocument:
    def test_json_list(self, tmp_path):
        path = _write_json(tmp_path, [
            {"name": "search_products", "handler": "search_products"},
            {"name": "view_cart", "handler": "view_cart"},
        ])
        result = load_action_document(path)
        assert result.ok
        assert [d.name for d in result.definitions] == ["search_products", "view_cart"]

    def test_yaml_actions_key(self, tmp_path):
        path = _write_yaml(tmp_path, {"actions": [
            {"name": "find_products", "handler": "search_products", "description": "Find things"},
        ]})
        result = load_action_document(path)
        definition = result.definitions[0]
        assert definition.name == "find_products"
        assert definition.description == "Find things"
        assert definition.parameter_schema["required"] == ["query"]

    def test_bad_entries_reported_and_skipped(self, tmp_path):
        path = _write_json(tmp_path, [
            {"name": "search_products", "handler": "search_products"},
            {"name": "Bad-Name", "handler": "search_products"},
            {"name": "refund", "handler": "refund_order"},
            {"name": "search_products", "handler": "get_pricing"},
            {"handler": "view_cart"},
            {"name": "view_cart", "handler": "view_cart", "surprise": True},
        ])
        result = load_action_document(path)

        assert [d.name for d in result.definitions] == ["search_products"]
        assert not result.ok
        assert len(result.diagnostics) == 5
        assert result.diagnostics[0].startswith("actions[1]: invalid entry (name)")
        assert "unknown handler 'refund_order'" in result.diagnostics[1]
        assert "duplicate action name 'search_products'" in result.diagnostics[2]

    def test_disabled_entries_skipped_silently(self, tmp_path):
        path = _write_json(tmp_path, [
            {"name": "search_products", "handler": "search_products"},
            {"name": "view_cart", "handler": "view_cart", "enabled": False},
        ])
        result = load_action_document(path)
        assert result.ok
        assert [d.name for d in result.definitions] == ["search_products"]

    def test_zero_ttl_disables_caching(self, tmp_path):
        path = _write_json(tmp_path, [
            {"name": "search_products", "handler": "search_products", "cache_ttl_seconds": 0},
            {"name": "get_pricing", "handler": "get_pricing", "cache_ttl_seconds": 5},
            {"name": "add_to_cart", "handler": "add_to_cart", "cache_ttl_seconds": 10},
        ])
        search, pricing, add = load_action_document(path).definitions
        assert search.cache_policy is None
        assert pricing.cache_policy.ttl_seconds == 5
        assert pricing.cache_policy.tags_fn is not None
        assert add.cache_policy.ttl_seconds == 10

    def test_overrides_applied(self, tmp_path):
        path = _write_json(tmp_path, [{
            "name": "get_pricing",
            "handler": "get_pricing",
            "modes": ["b2b", "unknown"],
            "permissions": ["contract_buyer"],
            "timeout_ms": 400,
            "category": "contracts",
        }])
        definition = load_action_document(path).definitions[0]
        assert definition.modes == [Mode.B2B]
        assert definition.permissions == ["contract_buyer"]
        assert definition.timeout_ms == 400
        assert definition.category == "contracts"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_action_document(tmp_path / "absent.json")

    def test_unparseable_document(self, tmp_path):
        path = tmp_path / "actions.json"
        path.write_text("[{not json", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_action_document(path)

    def test_document_must_hold_a_list(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_action_document(_write_yaml(tmp_path, {"actions": {"name": "search_products"}}))


class TestBuildRegistry:
    def test_uses_document_when_configured(self, tmp_path):
        path = _write_yaml(tmp_path, {"actions": [
            {"name": "search_products", "handler": "search_products"},
            {"name": "bulk_quote", "handler": "get_bulk_pricing"},
            {"name": "broken", "handler": "missing_handler"},
        ]})
        registry = build_registry(AssistantSettings(action_document_path=str(path)))
        assert registry.names() == ["bulk_quote", "search_products"]

    def test_defaults_without_document(self):
        registry = build_registry(AssistantSettings())
        assert "get_bulk_pricing" in registry
        assert len(registry) == 14

    def test_missing_capability_fails_load(self):
        settings = AssistantSettings(capabilities=["UNIFIED_DATA_ACCESS", "CART_MUTATION"])
        with pytest.raises(CapabilityUnavailable):
            build_registry(settings)
