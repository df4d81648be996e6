from canva_relay.config import Settings
from canva_relay.http_server import create_app

__all__ = ["Settings", "create_app"]
