"""
SchoolPortal Client Configuration Management
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any

from dotenv import load_dotenv


# Late-but-accepted window after a test's duration; not configurable
GRACE_PERIOD_MINUTES = 10


@dataclass
class ClientConfig:
    """Configuration for the SchoolPortal client"""

    # API settings
    api_base_url: str = "http://localhost:5000/api"
    max_retries: int = 3
    timeout_ms: int = 20000  # per request, before retries
    upload_timeout_ms: int = 30000

    # Navigation
    login_path: str = "/login"

    # Logging settings
    environment: str = "development"  # development, production
    log_level: str = "WARNING"
    log_file: Optional[str] = None
    verbose: bool = False

    # Paths
    config_dir: str = field(default_factory=lambda: str(Path.home() / ".schoolportal"))
    credentials_file: str = "credentials.json"
    compromise_file: str = "compromised_tests.json"

    def __post_init__(self):
        """Initialize paths and directories"""
        Path(self.config_dir).mkdir(parents=True, exist_ok=True)

        if not os.path.isabs(self.credentials_file):
            self.credentials_file = str(Path(self.config_dir) / self.credentials_file)
        if not os.path.isabs(self.compromise_file):
            self.compromise_file = str(Path(self.config_dir) / self.compromise_file)

    def load_from_file(self, config_path: str) -> None:
        """Load configuration from JSON file"""
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
                for key, value in data.items():
                    if hasattr(self, key):
                        setattr(self, key, value)

    @classmethod
    def load_default(cls) -> "ClientConfig":
        """Load defaults, then the user config file, then the environment"""
        load_dotenv()

        config_dir = os.environ.get("SCHOOLPORTAL_CONFIG_DIR")
        config = cls(config_dir=config_dir) if config_dir else cls()

        default_config_path = Path(config.config_dir) / "config.json"
        if default_config_path.exists():
            config.load_from_file(str(default_config_path))

        config._load_from_env()

        return config

    def _load_from_env(self) -> None:
        """Load configuration from environment variables"""
        env_mappings = {
            "SCHOOLPORTAL_API_URL": "api_base_url",
            "SCHOOLPORTAL_MAX_RETRIES": ("max_retries", int),
            "SCHOOLPORTAL_API_TIMEOUT": ("timeout_ms", int),
            "SCHOOLPORTAL_ENVIRONMENT": "environment",
            "SCHOOLPORTAL_LOG_LEVEL": "log_level",
            "SCHOOLPORTAL_LOG_FILE": "log_file",
            "SCHOOLPORTAL_VERBOSE": ("verbose", lambda x: x.lower() == "true"),
        }

        for env_var, mapping in env_mappings.items():
            value = os.environ.get(env_var)
            if value:
                if isinstance(mapping, tuple):
                    attr, converter = mapping
                    setattr(self, attr, converter(value))
                else:
                    setattr(self, mapping, value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary"""
        return asdict(self)
