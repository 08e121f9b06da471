from scifair.config.engine_settings import EngineSettings, get_engine_settings, settings

__all__ = ["EngineSettings", "get_engine_settings", "settings"]
