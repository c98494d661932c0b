MODULE_ID = "tokens"
MODULE_VERSION = "1.0.0"
MODULE_DESCRIPTION = "OAuth 2.0 clients, opaque bearer tokens, authorization codes and signing keys"

ROUTES = [
    "tokens.routes",
]

TABLES = [
    "oauth_clients",
    "access_tokens",
    "authorization_codes",
    "signing_keys",
]

PUBLISHES = []

SUBSCRIBES = []

IMPLEMENTS = ["TokenService"]

REQUIRES = ["Store", "Settings", "SecretBox", "LicenseService"]

DAEMONS = []


def register(app, registry) -> None:
    """Register the tokens module: routes and TokenService."""
    from modules.tokens import routes
    from modules.tokens.service import TokenService

    app.include_router(routes.router, prefix="/api")
    app.include_router(routes.router, prefix="/api/v1")

    registry.register_provider("TokenService", TokenService(
        registry.require("Store"),
        registry.require("Settings"),
        registry.require("SecretBox"),
        registry.require("LicenseService"),
    ))


def register_subscribers(bus, registry) -> None:
    """The tokens module neither publishes nor subscribes."""
