from orgguard.config.loader import load_settings
from orgguard.config.schema import DeploymentMode, Settings

__all__ = ["DeploymentMode", "Settings", "load_settings"]
