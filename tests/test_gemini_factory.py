"""Tests for the centralized Gemini client factory."""

from unittest.mock import patch

import pytest

from storygen.core import settings as settings_module
from storygen.core.exceptions import ConfigurationError
from storygen.core.gemini_factory import GeminiNotConfiguredError, build_gemini_client


@pytest.fixture()
def gemini_settings(monkeypatch):
    s = settings_module.settings
    monkeypatch.setattr(s, "google_cloud_project", None)
    monkeypatch.setattr(s, "gemini_api_key", None)
    monkeypatch.setattr(s, "google_cloud_location", "us-central1")
    monkeypatch.setattr(s, "gemini_text_model", "gemini-2.5-flash")
    monkeypatch.setattr(s, "gemini_image_model", "gemini-2.5-flash-image")
    monkeypatch.setattr(s, "gemini_fallback_text_model", "gemini-2.0-flash")
    monkeypatch.setattr(s, "gemini_fallback_image_model", None)
    return s


class TestGeminiNotConfiguredError:
    def test_is_a_configuration_error(self):
        assert isinstance(GeminiNotConfiguredError(), ConfigurationError)

    def test_names_both_credentials(self):
        err = GeminiNotConfiguredError()
        assert "GEMINI_API_KEY" in str(err)
        assert "GOOGLE_CLOUD_PROJECT" in str(err)


class TestBuildGeminiClient:
    def test_raises_when_no_credentials(self, gemini_settings):
        with pytest.raises(GeminiNotConfiguredError):
            build_gemini_client()

    def test_builds_client_with_api_key(self, gemini_settings, monkeypatch):
        monkeypatch.setattr(gemini_settings, "gemini_api_key", "test-key")

        with patch("storygen.services.vertex_gemini.genai"):
            client = build_gemini_client()

        assert client._text_model == "gemini-2.5-flash"
        assert client._fallback_text_model == "gemini-2.0-flash"
        assert client._fallback_image_model is None

    def test_builds_client_with_gcp_project(self, gemini_settings, monkeypatch):
        monkeypatch.setattr(gemini_settings, "google_cloud_project", "test-project")

        with patch("storygen.services.vertex_gemini.genai") as genai:
            build_gemini_client()

        assert genai.Client.call_args.kwargs["project"] == "test-project"
