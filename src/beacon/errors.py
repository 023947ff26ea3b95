"""Error taxonomy shared by the registry core, the HTTP adapter and the client."""


class RegistryError(Exception):
    """Base class for every error raised by beacon."""


class ValidationError(RegistryError):
    """Malformed or missing required input. Raised before the store is touched."""


class NotFound(RegistryError):
    """The operation targets a service id that is not registered."""

    def __init__(self, service_id: str):
        super().__init__(f"Service not found: {service_id}")
        self.service_id = service_id


class StoreError(RegistryError):
    """A unit of work failed to commit; nothing from it was persisted."""
