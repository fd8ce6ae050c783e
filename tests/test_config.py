import pytest

from app.crm.config import (
    ALL_FIELDS,
    DEFAULT_EDITABLE,
    CustomerField,
    FieldSettings,
    load_config,
    load_settings,
    parse_field_list,
)


class TestParseFieldList:
    def test_empty_means_default(self):
        assert parse_field_list("", DEFAULT_EDITABLE) == frozenset(DEFAULT_EDITABLE)
        assert parse_field_list("  ", ALL_FIELDS) == frozenset(ALL_FIELDS)

    def test_parses_names(self):
        assert parse_field_list("name, Email,,phone", ALL_FIELDS) == {
            CustomerField.NAME,
            CustomerField.EMAIL,
            CustomerField.PHONE,
        }

    def test_unknown_name_raises(self):
        with pytest.raises(ValueError, match="favourite_colour"):
            parse_field_list("name,favourite_colour", ALL_FIELDS)


def test_touchpoints_never_editable():
    fs = FieldSettings(editable=frozenset(ALL_FIELDS))
    assert not fs.is_editable(CustomerField.TOUCHPOINTS)
    assert fs.is_editable(CustomerField.STAGE)
    assert fs.is_visible(CustomerField.TOUCHPOINTS)


def test_defaults(monkeypatch):
    for k in ("SECRET_KEY", "ENV", "DATABASE_URL", "LOG_LEVEL", "CRM_VISIBLE_FIELDS", "CRM_EDITABLE_FIELDS"):
        monkeypatch.delenv(k, raising=False)
    s = load_settings()
    assert s.database_url == "sqlite:///crm.db"
    assert s.log_level == "INFO"
    assert s.fields == FieldSettings()


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("CRM_VISIBLE_FIELDS", "name,stage")
    monkeypatch.setenv("CRM_EDITABLE_FIELDS", "name")
    monkeypatch.setenv("ENV", "production")
    cfg = load_config()
    assert cfg["LOG_LEVEL"] == "DEBUG"
    assert cfg["SESSION_COOKIE_SECURE"] is True
    fields = cfg["CRM_FIELD_SETTINGS"]
    assert fields.visible == {CustomerField.NAME, CustomerField.STAGE}
    assert fields.editable == {CustomerField.NAME}


def test_production_refuses_sqlite(monkeypatch, tmp_path):
    from app.crm import create_app

    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "a-strong-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    with pytest.raises(RuntimeError, match="Postgres"):
        create_app()
