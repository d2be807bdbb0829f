"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from medmorph_reporting.config import DEFAULT_FHIR_BASE_URL, DEFAULT_PAGE_SIZE, Settings


def test_defaults():
    settings = Settings()

    assert settings.fhir_base_url == DEFAULT_FHIR_BASE_URL
    assert settings.search_page_size == DEFAULT_PAGE_SIZE
    assert settings.missing_run_coordinates() == ["PLAN_URL", "ACTION_ID", "REPORT_ENDPOINT"]


def test_from_env(monkeypatch):
    monkeypatch.setenv("FHIR_BASE_URL", "http://hapi.example.org/fhir")
    monkeypatch.setenv("PLAN_URL", "http://example.org/fhir/PlanDefinition/p")
    monkeypatch.setenv("ACTION_ID", "start")
    monkeypatch.setenv("REPORT_ENDPOINT", "https://receiver.example.org")
    monkeypatch.setenv("SEARCH_PAGE_SIZE", "50")

    settings = Settings.from_env(load_env_file=False)

    assert settings.fhir_base_url == "http://hapi.example.org/fhir"
    assert settings.search_page_size == 50
    assert settings.missing_run_coordinates() == []


def test_invalid_page_size(monkeypatch):
    monkeypatch.setenv("SEARCH_PAGE_SIZE", "0")

    with pytest.raises(ValidationError):
        Settings.from_env(load_env_file=False)
