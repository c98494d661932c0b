MODULE_ID = "policy"
MODULE_VERSION = "1.0.0"
MODULE_DESCRIPTION = "License policy evaluation, paid access grants and refunds"

ROUTES = [
    "policy.routes",
]

TABLES = [
    "payment_transactions",
]

PUBLISHES = [
    "payment.completed",
    "usage.detected",
]

SUBSCRIBES = []

IMPLEMENTS = ["AccessService"]

REQUIRES = ["Store", "Settings", "LicenseService", "TokenService", "PaymentProcessor", "AuditLog", "EventBus"]

DAEMONS = []


def register(app, registry) -> None:
    """Register the policy module: routes and AccessService."""
    from modules.policy import routes
    from modules.policy.service import AccessService

    app.include_router(routes.router, prefix="/api")
    app.include_router(routes.router, prefix="/api/v1")

    registry.register_provider("AccessService", AccessService(
        registry.require("Store"),
        registry.require("LicenseService"),
        registry.require("TokenService"),
        registry.require("PaymentProcessor"),
        registry.require("AuditLog"),
        registry.require("EventBus"),
        registry.require("Settings"),
    ))


def register_subscribers(bus, registry) -> None:
    """The policy module only publishes."""
