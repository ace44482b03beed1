import yaml
from pathlib import Path
from .models import AppConfig

def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    # Flat files with only general keys are accepted as the 'general' section
    if data and not any(key in data for key in ("general", "output", "encoding", "concurrency")):
        data = {"general": data}

    return AppConfig(**data)
