"""Unit tests for Settings."""

from pydantic import ValidationError
import pytest

from ml2_backend.config import Settings


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.execution_time_project == 60
        assert settings.execution_time_images == 30
        assert settings.build_descriptor == "python_java/pom.xml"
        assert settings.artifact_marker == "with-dependencies"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("EXECUTION_TIME_PROJECT", "5")
        monkeypatch.setenv("BUILD_TOOL_PATH", "/opt/maven/bin/mvn")

        settings = Settings(_env_file=None)

        assert settings.execution_time_project == 5
        assert settings.build_tool_path == "/opt/maven/bin/mvn"

    def test_log_level_normalized(self):
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_level="chatty")

    def test_deadline_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, execution_time_project=0)
