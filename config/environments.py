"""
Environment-specific configuration overrides.
"""
from typing import Dict, Optional
from .settings import Settings


class DevelopmentConfig(Settings):
    """Development environment configuration."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.logging.sample_rate = 0.1


class TestingConfig(Settings):
    """Testing environment configuration."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.logging.level = "WARNING"
        self.executor.base_delay = 0.0
        self.executor.jitter = False


class ProductionConfig(Settings):
    """Production environment configuration."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.logging.level = "WARNING"
        self.state.lock_timeout = max(self.state.lock_timeout, 30.0)


# Configuration factory
CONFIG_MAP: Dict[str, type] = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}


def get_config(environment: Optional[str] = None) -> Settings:
    """Get configuration for the specified environment."""
    if environment is None:
        from .settings import settings
        environment = settings.environment

    config_class = CONFIG_MAP.get(environment.lower(), Settings)
    return config_class(environment=environment.lower())
