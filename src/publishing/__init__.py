"""Container image publishing."""

from src.publishing.publisher import ImagePublisher, registry_host

__all__ = ["ImagePublisher", "registry_host"]
