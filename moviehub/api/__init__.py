from moviehub.api.server import CatalogServer, create_app

__all__ = ["CatalogServer", "create_app"]
