"""Configuration module"""
from .settings import Settings, settings, get_settings, ConfigurationError

__all__ = ['Settings', 'settings', 'get_settings', 'ConfigurationError']
