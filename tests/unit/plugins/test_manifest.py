"""Unit tests — Plugin manifest parsing and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from taphost.bridge.capabilities import Capability
from taphost.exceptions import ManifestError
from taphost.plugins.manifest import load_manifest, parse_manifest

FULL = """
name = "blog"
description = "Articles"
version = "1.2.0"
default_enabled = false
dependencies = ["categories"]
capabilities = ["db_read", "cache"]

[taps]
implements = ["tap_item_info", "tap_item_access"]
weight = 5
weights = { tap_item_access = -10 }
options = { per_page = 20 }

[migrations]
files = ["migrations/001_create.sql", "migrations/002_index.sql"]
depends_on = ["categories"]
"""


@pytest.mark.unit
class TestParseManifest:
    def test_full_manifest(self) -> None:
        manifest = parse_manifest(FULL, "blog")
        assert manifest.name == "blog"
        assert manifest.version == "1.2.0"
        assert manifest.default_enabled is False
        assert manifest.dependencies == ["categories"]
        assert manifest.capabilities == [Capability.DB_READ, Capability.CACHE]
        assert manifest.taps.options == {"per_page": 20}
        assert manifest.migrations.files[0] == "migrations/001_create.sql"
        assert manifest.migrations.depends_on == ["categories"]

    def test_weight_for_uses_override(self) -> None:
        manifest = parse_manifest(FULL, "blog")
        assert manifest.weight_for("tap_item_access") == -10
        assert manifest.weight_for("tap_item_info") == 5

    def test_implements(self) -> None:
        manifest = parse_manifest(FULL, "blog")
        assert manifest.implements("tap_item_info")
        assert not manifest.implements("tap_menu")

    def test_minimal_manifest_defaults(self) -> None:
        manifest = parse_manifest('name = "tiny"\n', "tiny")
        assert manifest.default_enabled is True
        assert manifest.taps.implements == []
        assert manifest.taps.weight == 0
        assert manifest.migrations.files == []

    @pytest.mark.parametrize(
        "text",
        [
            'name = "Bad-Name"',
            'name = "x"\ncapabilities = ["root"]',
            'name = "x"\ndependencies = ["x"]',
            'name = "x"\n[taps]\nimplements = ["tap_a", "tap_a"]',
            'name = "x"\n[taps]\nimplements = ["tap_a"]\nweights = { tap_b = 1 }',
            'name = "x"\n[migrations]\nfiles = ["../escape.sql"]',
            'name = "x"\nunknown_key = 1',
            'name = "x"\n[taps]\nweight = "heavy"',
        ],
    )
    def test_invalid_manifests(self, text: str) -> None:
        with pytest.raises(ManifestError):
            parse_manifest(text, "x")

    def test_toml_syntax_error(self) -> None:
        with pytest.raises(ManifestError, match="TOML syntax error"):
            parse_manifest("name = ", "x")

    def test_to_dict_is_json_ready(self) -> None:
        data = parse_manifest(FULL, "blog").to_dict()
        assert data["capabilities"] == ["db_read", "cache"]
        assert data["taps"]["weights"] == {"tap_item_access": -10}


@pytest.mark.unit
class TestLoadManifest:
    def test_name_must_match_file(self, tmp_path: Path) -> None:
        path = tmp_path / "other.info.toml"
        path.write_text('name = "blog"\n')
        with pytest.raises(ManifestError, match="does not match"):
            load_manifest(path)

    def test_loads_from_disk(self, tmp_path: Path) -> None:
        path = tmp_path / "blog.info.toml"
        path.write_text(FULL)
        assert load_manifest(path).name == "blog"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestError) as exc_info:
            load_manifest(tmp_path / "ghost.info.toml")
        assert exc_info.value.plugin == "ghost"
