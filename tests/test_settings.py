"""
test_settings.py
----------------
MTB FHIR Bridge — Test Suite for settings.py
--------------------------------------------
Tests cover:
    - Defaults without a settings file
    - YAML values are loaded; environment variables override them
    - LOGIN_REQUIRED parsing
    - Base URLs gain a trailing slash
    - A missing explicit settings file is an error

Run:
    pytest tests/test_settings.py -v --tb=short

Project: MTB FHIR Bridge
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from settings import Settings, load_settings

_ENV = (
    "MTB_SETTINGS", "FHIR_BASE_URL", "PORTAL_URL", "LOGIN_REQUIRED", "FILE_SERVER",
    "FILE_SERVER_BUCKET", "FILE_SERVER_ACCESS_KEY", "FILE_SERVER_SECRET_KEY", "DIAGNOSTICS_DIR",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("settings.load_dotenv", lambda: None)


def test_defaults():
    settings = Settings()
    assert settings.port == 3001
    assert settings.login_required is False
    assert settings.storage_enabled is False
    assert settings.systems.mtb == "https://cbioportal.org/mtb/"


def test_yaml_values_loaded(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "fhir_base: http://hapi:8080/fhir\n"
        "login_required: true\n"
        "systems:\n"
        "  patient: https://example.org/patient/\n"
    )
    settings = load_settings(path)
    assert settings.fhir_base == "http://hapi:8080/fhir/"
    assert settings.login_required is True
    assert settings.systems.patient == "https://example.org/patient/"
    assert settings.systems.mtb == "https://cbioportal.org/mtb/"


def test_env_overrides_yaml(tmp_path, monkeypatch):
    path = tmp_path / "settings.yaml"
    path.write_text("fhir_base: http://hapi:8080/fhir/\nlogin_required: true\n")
    monkeypatch.setenv("FHIR_BASE_URL", "http://other:8080/fhir")
    monkeypatch.setenv("LOGIN_REQUIRED", "false")
    monkeypatch.setenv("FILE_SERVER", "http://minio:9000")

    settings = load_settings(path)

    assert settings.fhir_base == "http://other:8080/fhir/"
    assert settings.login_required is False
    assert settings.storage_enabled is True


@pytest.mark.parametrize("raw,expected", [("1", True), ("yes", True), ("TRUE", True), ("0", False), ("no", False)])
def test_login_required_parsing(tmp_path, monkeypatch, raw, expected):
    monkeypatch.setenv("LOGIN_REQUIRED", raw)
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_settings(path).login_required is expected


def test_settings_file_from_env(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("port: 4000\n")
    monkeypatch.setenv("MTB_SETTINGS", str(path))
    assert load_settings().port == 4000


def test_missing_explicit_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_settings(tmp_path / "nope.yaml")
