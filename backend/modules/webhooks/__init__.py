MODULE_ID = "webhooks"
MODULE_VERSION = "1.0.0"
MODULE_DESCRIPTION = "Signed outbound webhooks for license, payment and usage events"

ROUTES = [
    "webhooks.routes",
]

TABLES = [
    "webhook_subscriptions",
    "webhook_deliveries",
]

PUBLISHES = []

SUBSCRIBES = [
    "license.created",
    "license.updated",
    "license.expired",
    "payment.completed",
    "usage.detected",
]

IMPLEMENTS = ["WebhookDispatcher"]

REQUIRES = ["Store", "Settings", "SecretBox", "HttpClient", "EventBus"]

DAEMONS = []


def register(app, registry) -> None:
    """Register the webhooks module: routes and WebhookDispatcher."""
    from modules.webhooks import routes
    from modules.webhooks.dispatcher import WebhookDispatcher

    app.include_router(routes.router, prefix="/api")
    app.include_router(routes.router, prefix="/api/v1")

    registry.register_provider("WebhookDispatcher", WebhookDispatcher(
        registry.require("Store"),
        registry.require("Settings"),
        registry.require("SecretBox"),
        registry.require("HttpClient"),
    ))


def register_subscribers(bus, registry) -> None:
    """Forward every subscribable event to the owner's webhooks."""
    dispatcher = registry.require("WebhookDispatcher")
    for event_type in SUBSCRIBES:
        bus.subscribe(event_type, dispatcher.handle_event)
