"""Configuration loading and validation."""

import json
import hashlib
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError
from .models import Workflow


class RetryConfig(BaseModel):
    """Retry policy configuration for step execution."""
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=10.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=5.0)
    jitter: bool = Field(default=True)


class RunnerConfig(BaseModel):
    """Main runner configuration."""
    name: str = Field(default="replay-agent")

    retry: RetryConfig = Field(default_factory=RetryConfig)

    default_step_timeout_ms: int = Field(default=30000, ge=100)
    login_timeout_ms: int = Field(default=30000, ge=1000)
    screenshot_on_error: bool = Field(default=True)

    # Paths
    workflows_directory: str = Field(default="./config/workflows")
    data_directory: str = Field(default="./data")

    def config_hash(self) -> str:
        """Generate hash of config for change detection."""
        return hashlib.sha256(
            self.model_dump_json().encode()
        ).hexdigest()[:16]


class ConfigLoader:
    """Loads and validates YAML/JSON configurations and workflow files."""

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)
        self._hashes: dict[str, str] = {}

    def load_runner_config(self, path: Optional[str] = None) -> RunnerConfig:
        """Load runner configuration, falling back to defaults when no file exists."""
        if path is None:
            path = self.config_dir / "runner.yaml"
            if not path.exists():
                return RunnerConfig()
        else:
            path = Path(path)

        data = self._load_file(path)
        try:
            return RunnerConfig(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid runner config: {e}", config_path=str(path))

    def load_workflow(self, path: str) -> Workflow:
        """Load a single workflow definition."""
        path = Path(path)
        data = self._load_file(path)
        data = data.get("workflow", data)
        try:
            return Workflow.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid workflow: {e}", config_path=str(path))

    def load_workflows(self, directory: Optional[str] = None) -> list[Workflow]:
        """Load all workflow definitions from directory."""
        if directory is None:
            directory = self.config_dir / "workflows"
        else:
            directory = Path(directory)

        workflows = []
        if not directory.exists():
            return workflows

        for pattern in ("**/*.yaml", "**/*.yml", "**/*.json"):
            for file_path in sorted(directory.glob(pattern)):
                workflows.append(self.load_workflow(str(file_path)))

        return workflows

    def load_domain_scope(self, path: str) -> dict[str, Any]:
        """Load raw domain scope settings; validation happens in DomainScope."""
        path = Path(path)
        data = self._load_file(path)
        return data.get("domain_scope", data.get("domainScope", data))

    def has_config_changed(self, path: str) -> bool:
        """Check if a config file has changed since last load."""
        path = Path(path)
        current_hash = self._compute_file_hash(path)
        previous_hash = self._hashes.get(str(path))
        return current_hash != previous_hash

    def _load_file(self, path: Path) -> dict[str, Any]:
        """Load YAML or JSON file."""
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", config_path=str(path))

        try:
            content = path.read_text()
            self._hashes[str(path)] = hashlib.sha256(content.encode()).hexdigest()[:16]

            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content) or {}
            elif path.suffix == ".json":
                data = json.loads(content)
            else:
                raise ConfigError(
                    f"Unsupported config format: {path.suffix}",
                    config_path=str(path)
                )
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", config_path=str(path))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON: {e}", config_path=str(path))

        if not isinstance(data, dict):
            raise ConfigError(
                f"Expected a mapping at the top level, got {type(data).__name__}",
                config_path=str(path),
            )
        return data

    def _compute_file_hash(self, path: Path) -> str:
        """Compute hash of file contents."""
        if not path.exists():
            return ""
        content = path.read_text()
        return hashlib.sha256(content.encode()).hexdigest()[:16]
