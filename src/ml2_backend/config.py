"""Application settings with pydantic-settings.

Values come from the environment or a local `.env` file. Tool locations
default to what a typical single-node install provides on PATH.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """ML2 backend settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === Logging ===
    service_name: str = Field(
        default="ml2-backend",
        description="Service name for structured logging",
    )
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )

    # === Persistence ===
    database_url: str = Field(
        default="sqlite+aiosqlite:///./ml2.db",
        description="SQLAlchemy async connection URL",
        examples=["postgresql+asyncpg://user:pass@db:5432/ml2"],
    )

    # === Storage ===
    storage_path: Path = Field(
        default=Path("storage"),
        description="Root directory holding one sub-directory per user",
    )
    scripts_path: Path = Field(
        default=Path("scripts"),
        description="Directory holding the transformation tool jars",
    )
    format_converter_jar: str = "sirius_web_to_desktop.jar"
    model_converter_jar: str = "m2c.jar"
    generator_jar: str = "mlquadrat.jar"
    images_script: str = "loop.py"

    # === Runtimes ===
    java_path: str = Field(default="java", description="JVM used by the converters")
    java11_path: str = Field(default="java", description="JVM used by generator and artifacts")
    build_tool_path: str = Field(default="mvn", description="Build tool packaging projects")
    python_path: str = Field(default="python3", description="Interpreter for the image script")
    conda_path: Path = Field(
        default=Path("/opt/conda/bin"),
        description="Prepended to PATH when running generated artifacts",
    )

    # === Generated project layout (relative to the project root) ===
    build_descriptor: str = "python_java/pom.xml"
    project_execution: str = "python_java/target"
    dataset_subdirectory: str = "python_java/target/data"
    project_visualisation: str = "python_java/src/python-scripts/pics"
    report_file_name: str = "html_report.html"
    artifact_marker: str = "with-dependencies"
    artifact_extension: str = ".jar"

    # === Deadlines ===
    execution_time_project: int = Field(
        default=60,
        ge=1,
        description="Seconds a generated artifact may run before it is killed",
    )
    execution_time_images: int = Field(
        default=30,
        ge=1,
        description="Seconds the image script may run before it is killed",
    )
    reader_grace_sec: float = Field(
        default=2.0,
        gt=0,
        description="Seconds to keep draining output after a process was killed",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
