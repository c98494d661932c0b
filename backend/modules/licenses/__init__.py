MODULE_ID = "licenses"
MODULE_VERSION = "1.0.0"
MODULE_DESCRIPTION = "RSL license documents: generation, validation, storage, lifecycle, embedding and discovery"

ROUTES = [
    "licenses.routes",
    "licenses.discovery_routes",
]

TABLES = [
    "licenses",
]

PUBLISHES = [
    "license.created",
    "license.updated",
    "license.expired",
]

SUBSCRIBES = []

IMPLEMENTS = ["LicenseService", "MetadataEmbedder"]

REQUIRES = ["Store", "AuditLog", "EventBus"]

DAEMONS = ["licenses.expiry_sweep"]


def register(app, registry) -> None:
    """Register the licenses module: license and discovery routes, LicenseService and MetadataEmbedder."""
    from modules.licenses import discovery_routes, routes
    from modules.licenses.embedder import TextMetadataEmbedder
    from modules.licenses.service import LicenseService

    app.include_router(routes.router, prefix="/api")
    app.include_router(routes.router, prefix="/api/v1")
    app.include_router(discovery_routes.router, prefix="/api")
    app.include_router(discovery_routes.router, prefix="/api/v1")

    registry.register_provider("LicenseService", LicenseService(
        registry.require("Store"),
        registry.require("AuditLog"),
        registry.require("EventBus"),
    ))
    registry.register_provider("MetadataEmbedder", TextMetadataEmbedder())


def register_subscribers(bus, registry) -> None:
    """The licenses module only publishes."""
