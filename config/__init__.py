from .config import AppConfig, config

__all__ = ['AppConfig', 'config']
