"""
Tests for fiscal_config.loader and the get_active_config entrypoint.

Covers:
- Packaged defaults parse into frozen, typed tables
- Case-folding of category and unit synonym keys
- FISCAL_AUTHORITY_* environment overrides
- Checksum determinism and credential exclusion
- Active config caching
"""

import dataclasses
from decimal import Decimal

import pytest
import yaml

from fiscal_config import get_active_config, reset_active_config
from fiscal_config.loader import (
    DEFAULT_CONFIG_PATH,
    compute_checksum,
    load_configuration,
    load_yaml_file,
    parse_configuration,
)


@pytest.fixture
def raw():
    return load_yaml_file(DEFAULT_CONFIG_PATH)


class TestDefaults:
    """The packaged configuration."""

    def test_five_brackets_in_order(self):
        config = load_configuration(environ={})
        assert [b.code for b in config.tax_brackets] == ["A", "B", "C", "D", "E"]

    def test_bracket_rates(self):
        config = load_configuration(environ={})
        assert config.bracket("B").rate == Decimal("0.16")
        assert config.bracket("E").rate == Decimal("0.08")
        assert config.bracket("A").rate == Decimal("0")

    def test_unknown_bracket_raises(self):
        config = load_configuration(environ={})
        with pytest.raises(KeyError):
            config.bracket("Z")

    def test_class_codes_keep_leading_digits_as_strings(self):
        config = load_configuration(environ={})
        assert config.catalog.category_class_codes["meats"] == "73131600"
        assert config.catalog.misc_class_code == "5059690800"

    def test_configuration_is_frozen(self):
        config = load_configuration(environ={})
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.currency = "USD"
        with pytest.raises(TypeError):
            config.catalog.unit_synonyms["new"] = "KG"

    def test_item_code_prefix(self):
        assert load_configuration(environ={}).item_code.prefix == "KE2NT"


class TestParsing:
    """parse_configuration on edited documents."""

    def test_keys_case_folded(self, raw):
        raw["catalog"]["categories"] = {"  Fresh   Fish ": "73131600"}
        raw["catalog"]["unit_synonyms"] = {"Kilo  Gramme": "kg"}
        config = parse_configuration(raw, environ={})
        assert config.catalog.category_class_codes == {"fresh fish": "73131600"}
        assert config.catalog.unit_synonyms == {"kilo gramme": "KG"}

    def test_missing_required_section_raises(self, raw):
        del raw["tax_brackets"]
        with pytest.raises(KeyError):
            parse_configuration(raw, environ={})

    def test_payment_aliases_folded(self, raw):
        config = parse_configuration(raw, environ={})
        mobile = next(p for p in config.payment_methods if p.code == "06")
        assert "m-pesa" in mobile.aliases

    def test_load_from_path(self, raw, tmp_path):
        raw["business"]["name"] = "MAMA OLIECH"
        path = tmp_path / "fiscal.yaml"
        path.write_text(yaml.safe_dump(raw))
        assert load_configuration(path, environ={}).business.name == "MAMA OLIECH"


class TestEnvironmentOverrides:
    """Authority credentials from the environment."""

    def test_overrides_applied(self):
        config = load_configuration(
            environ={
                "FISCAL_AUTHORITY_URL": "https://etims.example/api/",
                "FISCAL_AUTHORITY_TIN": "P051234567Z",
                "FISCAL_AUTHORITY_CMC_KEY": "s3cret",
            }
        )
        assert config.authority.base_url == "https://etims.example/api"
        assert config.authority.tin == "P051234567Z"
        assert config.authority.cmc_key == "s3cret"
        assert config.authority.branch_id == "00"

    def test_empty_environ_disables_overrides(self, monkeypatch):
        monkeypatch.setenv("FISCAL_AUTHORITY_TIN", "P051234567Z")
        assert load_configuration(environ={}).authority.tin == "P000000000X"

    def test_cmc_key_not_in_repr(self):
        config = load_configuration(environ={"FISCAL_AUTHORITY_CMC_KEY": "s3cret"})
        assert "s3cret" not in repr(config.authority)


class TestChecksum:
    """Deterministic identity of the tables."""

    def test_deterministic(self, raw):
        assert compute_checksum(raw) == compute_checksum(dict(raw))

    def test_changes_with_tables(self, raw):
        before = compute_checksum(raw)
        raw["tax_brackets"][1]["rate"] = "0.14"
        assert compute_checksum(raw) != before

    def test_ignores_credentials(self, raw):
        before = compute_checksum(raw)
        raw["authority"]["cmc_key"] = "rotated"
        assert compute_checksum(raw) == before


class TestActiveConfig:
    """Process-wide cached configuration."""

    def setup_method(self):
        reset_active_config()

    def teardown_method(self):
        reset_active_config()

    def test_cached(self):
        assert get_active_config() is get_active_config()

    def test_reset_reloads(self):
        first = get_active_config()
        reset_active_config()
        assert get_active_config() is not first

    def test_activation_logged(self, captured_logs):
        get_active_config()
        assert any(r["message"] == "fiscal_config_activated" for r in captured_logs())
