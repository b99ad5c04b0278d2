"""Tests for the firmware catalog and version path resolution."""

import pytest

from firmware_rollout.catalog import FirmwareCatalog, VersionGraph
from firmware_rollout.exceptions import (
    CatalogConfigurationError, ConfigurationError, IncompatibleUpdateError
)


class TestVersionGraph:
    """Test the version graph."""

    def test_shortest_path_prefers_fewest_hops(self):
        """BFS returns the path with the fewest hops."""
        graph = VersionGraph()
        graph.add_edge("1.0", "1.1")
        graph.add_edge("1.1", "1.2")
        graph.add_edge("1.2", "2.0")
        graph.add_edge("1.0", "1.5")
        graph.add_edge("1.5", "2.0")

        assert graph.shortest_path("1.0", "2.0") == ["1.0", "1.5", "2.0"]

    def test_ties_follow_declaration_order(self):
        """Equal-length paths resolve to the first declared edge."""
        graph = VersionGraph()
        graph.add_edge("1.0", "1.2")
        graph.add_edge("1.0", "1.3")
        graph.add_edge("1.2", "2.0")
        graph.add_edge("1.3", "2.0")

        assert graph.shortest_path("1.0", "2.0") == ["1.0", "1.2", "2.0"]

    def test_unreachable_returns_none(self):
        """No path yields None."""
        graph = VersionGraph()
        graph.add_edge("1.0", "1.5")
        graph.add_version("2.0")

        assert graph.shortest_path("1.0", "2.0") is None
        assert graph.shortest_path("0.9", "2.0") is None

    def test_find_cycle(self):
        """A cycle is reported with its first version repeated."""
        graph = VersionGraph()
        graph.add_edge("1.0", "1.5")
        graph.add_edge("1.5", "2.0")
        graph.add_edge("2.0", "1.0")

        cycle = graph.find_cycle()

        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"1.0", "1.5", "2.0"}

    def test_acyclic_graph_has_no_cycle(self):
        """DAGs report no cycle."""
        graph = VersionGraph()
        graph.add_edge("1.0", "1.5")
        graph.add_edge("1.0", "2.0")
        graph.add_edge("1.5", "2.0")

        assert graph.find_cycle() is None

    def test_edge_duration_override(self):
        """Re-declaring an edge with a duration updates it."""
        graph = VersionGraph()
        graph.add_edge("1.0", "2.0")
        graph.add_edge("1.0", "2.0", 45)

        assert graph.edge_duration("1.0", "2.0") == 45
        assert graph.has_edge("1.0", "2.0")


class TestCatalogLoading:
    """Test building catalogs from documents and files."""

    def test_cycle_rejected(self):
        """Cyclic version edges are a catalog configuration error."""
        data = {
            "models": {
                "R750": {
                    "BIOS": {
                        "target_version": "2.0.0",
                        "edges": [
                            {"from": "1.0.0", "to": "1.5.0"},
                            {"from": "1.5.0", "to": "1.0.0"},
                        ],
                    }
                }
            }
        }

        with pytest.raises(CatalogConfigurationError) as exc_info:
            FirmwareCatalog.from_dict(data)

        assert exc_info.value.model == "R750"
        assert exc_info.value.component_type == "BIOS"
        assert "cycle" in str(exc_info.value)

    def test_missing_target_rejected(self):
        """Entries must declare a target version."""
        with pytest.raises(CatalogConfigurationError):
            FirmwareCatalog.from_dict({"models": {"R750": {"BIOS": {"path": ["1.0", "2.0"]}}}})

    def test_unknown_criticality_rejected(self):
        """Criticality must be a known value."""
        with pytest.raises(CatalogConfigurationError):
            FirmwareCatalog.from_dict(
                {"models": {"R750": {"BIOS": {"target_version": "2.0", "criticality": "urgent"}}}}
            )

    def test_load_yaml(self, tmp_path):
        """YAML catalogs load, and numeric versions are normalized to strings."""
        catalog_file = tmp_path / "catalog.yaml"
        catalog_file.write_text(
            "models:\n"
            "  R750:\n"
            "    BIOS:\n"
            "      target_version: 2.1\n"
            "      criticality: critical\n"
            "      estimated_duration_minutes: 25\n"
        )

        catalog = FirmwareCatalog.load(catalog_file)
        target = catalog.get_target("R750", "BIOS")

        assert target.version == "2.1"
        assert target.criticality == "critical"
        assert target.duration_minutes == 25

    def test_load_missing_file_gives_empty_catalog(self, tmp_path):
        """A missing catalog file is not an error."""
        catalog = FirmwareCatalog.load(tmp_path / "absent.yaml")

        assert catalog.models == []

    def test_load_invalid_yaml(self, tmp_path):
        """Unparseable files raise ConfigurationError."""
        catalog_file = tmp_path / "catalog.yaml"
        catalog_file.write_text("models: [unclosed\n")

        with pytest.raises(ConfigurationError):
            FirmwareCatalog.load(catalog_file)


class TestCatalogLookup:
    """Test target lookup and path resolution."""

    def test_model_lookup_is_case_insensitive(self, multi_step_catalog):
        """Model names match regardless of case."""
        assert multi_step_catalog.get_target("r750", "BIOS").version == "2.0.0"

    def test_unknown_component_returns_none(self, multi_step_catalog):
        """Untracked components have no target."""
        assert multi_step_catalog.get_target("R750", "NIC") is None
        assert multi_step_catalog.get_target("R650", "BIOS") is None

    def test_default_model_fallback(self):
        """The '*' model applies to models without their own entry."""
        catalog = FirmwareCatalog.from_dict({"models": {"*": {"BIOS": {"target_version": "3.0"}}}})

        assert catalog.get_target("R650", "BIOS").version == "3.0"

    def test_resolve_declared_path(self, multi_step_catalog):
        """Declared paths produce one hop per edge."""
        hops = multi_step_catalog.resolve_path("R750", "BIOS", "1.0.0")

        assert hops == [("1.0.0", "1.5.0", 20), ("1.5.0", "2.0.0", 20)]

    def test_resolve_direct_update_without_graph(self, multi_step_catalog):
        """Components without edges update directly."""
        hops = multi_step_catalog.resolve_path("R750", "iDRAC", "6.10")

        assert hops == [("6.10", "7.00", 10)]

    def test_resolve_at_target(self, multi_step_catalog):
        """No hops when already at target."""
        assert multi_step_catalog.resolve_path("R750", "BIOS", "2.0.0") == []

    def test_resolve_unreachable(self, multi_step_catalog):
        """A version outside the graph has no path."""
        with pytest.raises(IncompatibleUpdateError) as exc_info:
            multi_step_catalog.resolve_path("R750", "BIOS", "0.9.0")

        assert exc_info.value.current_version == "0.9.0"
        assert exc_info.value.target_version == "2.0.0"

    def test_edge_durations(self):
        """Per-edge durations override the entry default."""
        catalog = FirmwareCatalog.from_dict({
            "models": {
                "R750": {
                    "BIOS": {
                        "target_version": "2.0",
                        "estimated_duration_minutes": 15,
                        "edges": [
                            {"from": "1.0", "to": "1.5", "duration_minutes": 40},
                            {"from": "1.5", "to": "2.0"},
                        ],
                    }
                }
            }
        })

        assert catalog.resolve_path("R750", "BIOS", "1.0") == [("1.0", "1.5", 40), ("1.5", "2.0", 15)]

    def test_image_uri(self):
        """Image URIs are looked up per version."""
        catalog = FirmwareCatalog.from_dict({
            "models": {
                "R750": {
                    "BIOS": {
                        "target_version": "2.0",
                        "images": {"2.0": "http://repo/bios-2.0.exe"},
                    }
                }
            }
        })

        assert catalog.image_uri("R750", "BIOS", "2.0") == "http://repo/bios-2.0.exe"
        assert catalog.image_uri("R750", "BIOS", "1.5") == ""
