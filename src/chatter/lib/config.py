"""
Configuration management and validation for Chatter.

Loads the YAML configuration file into pydantic models, applies
environment overrides and writes the file back when the operator changes
settings from the command line.
"""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, List
from pydantic import BaseModel, Field, ValidationError, field_validator

from chatter.models.conversation_session import ModelProvider


DEFAULT_ALLOWED_EXTENSIONS = [
    "txt", "md", "rs", "toml", "json", "yaml", "yml", "js", "ts", "py",
    "html", "css", "xml", "csv", "log"
]

DEFAULT_FORBIDDEN_PATHS = [
    "/etc", "/usr", "/bin", "/sbin", "/boot", "/dev", "/proc", "/sys",
    "/var/log", "/var/lib", "/root",
    "~/.ssh", "~/.gnupg", "/home/*/.ssh", "/home/*/.gnupg",
    "C:\\Windows", "C:\\Windows\\System32", "C:\\Program Files", "C:\\Program Files (x86)"
]


class ObservabilityConfig(BaseModel):
    """Configuration for OpenTelemetry tracing."""
    enabled: bool = False
    service_name: str = "chatter"
    service_version: str = "1.0.0"
    environment: str = "development"
    otlp_endpoint: str = "http://localhost:4317"
    trace_sampling_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    export_timeout: int = Field(default=30, gt=0)


class LoggingConfig(BaseModel):
    """Configuration for logging settings."""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    console_level: str = Field(default="WARNING", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="structured", pattern="^(structured|simple)$")
    directory: str = "~/.chatter/logs"
    max_file_size: int = Field(default=10 * 1024 * 1024, gt=0)  # 10MB
    backup_count: int = Field(default=5, ge=1)
    include_trace: bool = True
    environment: str = "development"


class GeminiConfig(BaseModel):
    """Configuration for the Gemini provider."""
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    request_timeout: float = Field(default=300.0, gt=0)
    connect_timeout: float = Field(default=30.0, gt=0)


class OllamaConfig(BaseModel):
    """Configuration for the Ollama provider."""
    endpoint: str = "http://localhost:11434"
    supports_function_calling: Optional[bool] = None
    request_timeout: float = Field(default=300.0, gt=0)
    connect_timeout: float = Field(default=30.0, gt=0)


class AgentConfig(BaseModel):
    """Configuration for agent mode and the filesystem tools."""
    enabled: bool = False
    max_tool_iterations: int = Field(default=6, ge=1, le=50)
    read_cap_bytes: int = Field(default=256 * 1024, gt=0)  # 256KB
    max_file_size: int = Field(default=10 * 1024 * 1024, gt=0)  # 10MB
    allowed_extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_EXTENSIONS))
    auto_backup: bool = True
    dry_run: bool = False
    allow_working_directory: bool = True
    working_directory: Optional[str] = None
    allowed_paths: List[str] = Field(default_factory=list)
    forbidden_paths: List[str] = Field(default_factory=lambda: list(DEFAULT_FORBIDDEN_PATHS))

    @field_validator('allowed_extensions')
    @classmethod
    def normalize_extensions(cls, v):
        """Store extensions lower-case without a leading dot."""
        return [ext.lower().lstrip('.') for ext in v if ext.strip()]


class ChatterConfig(BaseModel):
    """Main Chatter configuration."""
    api_key: str = ""
    default_model: str = "gemini-2.5-flash"
    default_system_instruction: Optional[str] = None
    auto_save: bool = False
    sessions_dir: str = "~/.chatter/sessions"
    provider: ModelProvider = ModelProvider.GEMINI

    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    # Global settings
    debug: bool = False
    config_file_path: Optional[str] = None

    @property
    def sessions_path(self) -> Path:
        return Path(self.sessions_dir).expanduser()


class ConfigurationManager:
    """Manages Chatter configuration loading and validation."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._get_default_config_path()
        self.config: Optional[ChatterConfig] = None

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        if "CHATTER_CONFIG_PATH" in os.environ:
            return os.environ["CHATTER_CONFIG_PATH"]

        candidates = [
            "~/.chatter/config/config.yaml",
            "./config.yaml"
        ]

        for candidate in candidates:
            path = Path(candidate).expanduser()
            if path.exists():
                return str(path)

        return "~/.chatter/config/config.yaml"

    def load_config(self, config_path: Optional[str] = None) -> ChatterConfig:
        """Load and validate configuration from file."""
        if config_path:
            self.config_path = config_path

        config_file = Path(self.config_path).expanduser()

        try:
            if not config_file.exists():
                self._create_default_config(config_file)

            with open(config_file, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}

            if not isinstance(config_data, dict):
                raise ConfigurationError(f"Config file {config_file} must contain a mapping")

            config_data = self._merge_environment_config(config_data)

            self.config = ChatterConfig(**config_data)
            self.config.config_file_path = str(config_file)

            return self.config

        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {config_file}: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}")
        except OSError as e:
            raise ConfigurationError(f"Error loading configuration: {e}")

    def _create_default_config(self, config_file: Path) -> None:
        """Create a default configuration file."""
        config_file.parent.mkdir(parents=True, exist_ok=True)
        self._write_config(config_file, self._serializable(ChatterConfig()))

    def _merge_environment_config(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge configuration with environment variables."""
        env_mappings = {
            "GEMINI_API_KEY": ["api_key"],
            "CHATTER_PROVIDER": ["provider"],
            "CHATTER_MODEL": ["default_model"],
            "OLLAMA_HOST": ["ollama", "endpoint"],
            "CHATTER_LOG_LEVEL": ["logging", "level"],
            "CHATTER_DEBUG": ["debug"]
        }

        for env_var, config_path in env_mappings.items():
            if env_var in os.environ:
                value = os.environ[env_var]

                if env_var == "CHATTER_DEBUG":
                    value = value.lower() in ("true", "1", "yes")
                elif env_var in ("CHATTER_PROVIDER", "CHATTER_LOG_LEVEL"):
                    value = value.lower() if env_var == "CHATTER_PROVIDER" else value.upper()
                elif env_var == "OLLAMA_HOST" and "://" not in value:
                    value = f"http://{value}"

                current = config_data
                for key in config_path[:-1]:
                    current = current.setdefault(key, {})
                current[config_path[-1]] = value

        return config_data

    def get_config(self) -> ChatterConfig:
        """Get the loaded configuration."""
        if self.config is None:
            raise ConfigurationError("Configuration not loaded. Call load_config() first.")
        return self.config

    def save_config(self, config: Optional[ChatterConfig] = None) -> Path:
        """Write the configuration back to its file and create the sessions directory."""
        config = config or self.get_config()
        config_file = Path(self.config_path).expanduser()
        try:
            config_file.parent.mkdir(parents=True, exist_ok=True)
            self._write_config(config_file, self._serializable(config))
            config.sessions_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Error saving configuration: {e}")
        self.config = config
        return config_file

    def set_api_key(self, api_key: str) -> ChatterConfig:
        """Store a new Gemini API key."""
        if not api_key or not api_key.strip():
            raise ConfigurationError("API key cannot be empty")
        config = self.get_config()
        config.api_key = api_key.strip()
        self.save_config(config)
        return config

    def reset_config(self) -> ChatterConfig:
        """Reset configuration to defaults and rewrite the file."""
        self.config = ChatterConfig(config_file_path=str(Path(self.config_path).expanduser()))
        self.save_config(self.config)
        return self.config

    def validate_config(self) -> List[str]:
        """Validate the current configuration and return any warnings."""
        warnings = []
        config = self.get_config()

        if ModelProvider(config.provider).requires_api_key and not config.api_key:
            warnings.append("No Gemini API key configured. Set GEMINI_API_KEY or run 'chatter config set-api-key'")

        if config.agent.enabled and not config.agent.allow_working_directory and not config.agent.allowed_paths:
            warnings.append("Agent mode enabled without any allowed paths; every tool call will be denied")

        if config.debug and config.observability.environment == "production":
            warnings.append("Debug mode enabled in production environment")

        return warnings

    def display(self) -> List[str]:
        """Human-readable configuration lines for `chatter config show`."""
        config = self.get_config()
        lines = [
            "Current Configuration:",
            f"  Config File: {config.config_file_path}",
            f"  Provider: {ModelProvider(config.provider).value}",
            f"  API Key: {'Set (hidden)' if config.api_key else 'Not set'}",
            f"  Default Model: {config.default_model}",
            f"  Auto-save: {config.auto_save}",
            f"  Sessions Directory: {config.sessions_path}",
            f"  Agent Mode: {'enabled' if config.agent.enabled else 'disabled'}",
            f"  Max Tool Iterations: {config.agent.max_tool_iterations}",
        ]
        if config.default_system_instruction:
            lines.append(f"  Default System Instruction: {config.default_system_instruction}")
        if config.provider == ModelProvider.OLLAMA:
            lines.append(f"  Ollama Endpoint: {config.ollama.endpoint}")
        return lines

    def reload_config(self) -> ChatterConfig:
        """Reload configuration from file."""
        return self.load_config()

    @staticmethod
    def _serializable(config: ChatterConfig) -> Dict[str, Any]:
        data = config.model_dump(mode="json")
        data.pop("config_file_path", None)
        return data

    @staticmethod
    def _write_config(config_file: Path, data: Dict[str, Any]) -> None:
        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.safe_dump(data, f, default_flow_style=False, indent=2, sort_keys=False)


class ConfigurationError(Exception):
    """Exception raised for configuration-related errors."""
    pass


# Global configuration manager instance
_config_manager: Optional[ConfigurationManager] = None


def initialize_config(config_path: Optional[str] = None) -> ConfigurationManager:
    """Initialize global configuration manager."""
    global _config_manager
    _config_manager = ConfigurationManager(config_path)
    _config_manager.load_config()
    return _config_manager


def get_config_manager() -> ConfigurationManager:
    """Get the global configuration manager instance."""
    if _config_manager is None:
        raise ConfigurationError("Configuration not initialized. Call initialize_config() first.")
    return _config_manager


def get_config() -> ChatterConfig:
    """Get the global configuration."""
    return get_config_manager().get_config()
