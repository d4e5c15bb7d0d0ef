"""
Centralized settings and path configuration for the CPQ engine.
"""
import logging
import os
from pathlib import Path
from dataclasses import dataclass
from typing import Optional


def get_project_root() -> Path:
    """Get the project root directory (where pyproject.toml lives)."""
    # Walk up from this file to find the project root
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / 'pyproject.toml').exists():
            return parent
    # Fallback to 3 levels up from this file
    return Path(__file__).resolve().parent.parent.parent.parent


@dataclass
class Settings:
    """Application settings with sensible defaults."""

    # Project paths
    project_root: Path

    # Catalog snapshot exports (CSV files + compiled rules)
    data_dir: Path

    # Rule files
    rules_csv: Optional[Path] = None
    compiled_rules: Optional[Path] = None

    # Calculation defaults
    default_term_months: int = 12
    default_trigger: str = 'ON_QUOTE_SAVE'

    log_level: str = 'INFO'

    @classmethod
    def load(cls, project_root: Optional[Path] = None) -> 'Settings':
        """Load settings from the project structure and environment."""
        root = project_root or get_project_root()

        data_dir = Path(os.environ.get('CPQ_DATA_DIR', root / 'data'))

        return cls(
            project_root=root,
            data_dir=data_dir,
            rules_csv=data_dir / 'rules.csv',
            compiled_rules=data_dir / 'compiled_rules.json',
            default_term_months=int(os.environ.get('CPQ_DEFAULT_TERM_MONTHS', 12)),
            default_trigger=os.environ.get('CPQ_DEFAULT_TRIGGER', 'ON_QUOTE_SAVE').upper(),
            log_level=os.environ.get('CPQ_LOG_LEVEL', 'INFO').upper(),
        )


# Default settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def configure_logging(settings: Optional[Settings] = None):
    """Apply the configured log level to the package logger."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )
    logging.getLogger('cpq_engine').setLevel(settings.log_level)
