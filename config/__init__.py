from .config_loader import Config, SectionProxy, config
from .validation import ConfigError, validate_config

__all__ = ['config', 'Config', 'SectionProxy', 'ConfigError', 'validate_config']
