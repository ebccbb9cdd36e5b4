from zkregistry.logging.config import configure_logging, configure_from_settings, get_logger

__all__ = ["configure_logging", "configure_from_settings", "get_logger"]
