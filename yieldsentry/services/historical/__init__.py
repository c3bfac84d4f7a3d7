from .bitquery import BitqueryService
from .dappradar import DAppRadarService

__all__ = ["BitqueryService", "DAppRadarService"]
