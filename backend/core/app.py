# core/app.py — App factory with dynamic module discovery
#
# Creates and configures the FastAPI application. Builds the per-app core
# services (Store, EventBus, AuditLog, ...), discovers all modules under
# backend/modules/, resolves load order from REQUIRES/IMPLEMENTS declarations,
# and calls each module's register(app, registry) function.
#
# main.py is: from core.app import create_app; app = create_app()

import asyncio
import importlib
import logging
import pathlib
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from core.audit import AuditLog
from core.config import Settings
from core.crypto import SecretBox
from core.errors import install_error_handlers
from core.event_bus import InMemoryEventBus
from core.interfaces.payment import PaymentProcessor
from core.rate_limit import install_rate_limiting
from core.registry import ModuleRegistry
from core.store import Store

log = logging.getLogger("rsl.api")

__version__ = "1.0.0"


# ---------------------------------------------------------------------------
# Module discovery helpers
# ---------------------------------------------------------------------------

def _discover_modules() -> list[str]:
    """Return a list of module package names found under backend/modules/.

    A valid module directory contains an __init__.py with a MODULE_ID attribute.
    """
    modules_dir = pathlib.Path(__file__).parent.parent / "modules"
    found = []
    for entry in sorted(modules_dir.iterdir()):
        if not entry.is_dir():
            continue
        init_file = entry / "__init__.py"
        if not init_file.exists():
            continue
        pkg_name = f"modules.{entry.name}"
        try:
            mod = importlib.import_module(pkg_name)
            if hasattr(mod, "MODULE_ID"):
                found.append(pkg_name)
        except Exception as exc:
            log.warning(f"Module discovery: skipping {pkg_name!r} — {exc}")
    return found


def _resolve_load_order(pkg_names: list[str]) -> list[str]:
    """Topologically sort modules so that providers load before their consumers.

    Algorithm:
    1. Build a map of interface_name -> module_pkg for IMPLEMENTS declarations.
    2. For each module's REQUIRES list, find which module pkg provides that interface.
       Interfaces no module implements (Store, EventBus, ...) are core providers
       and add no edge.
    3. Perform Kahn's topological sort (no-dependency modules first).
    4. Any modules with circular or unresolvable deps load in discovery order at
       the end (with a warning) rather than crashing startup.
    """
    mods: dict[str, dict] = {}
    for pkg in pkg_names:
        m = importlib.import_module(pkg)
        mods[pkg] = {
            "implements": getattr(m, "IMPLEMENTS", []),
            "requires": getattr(m, "REQUIRES", []),
        }

    # interface -> providing pkg
    providers: dict[str, str] = {}
    for pkg, info in mods.items():
        for iface in info["implements"]:
            providers[iface] = pkg

    # pkg -> set of pkgs it depends on
    edges: dict[str, set[str]] = {pkg: set() for pkg in pkg_names}
    for pkg, info in mods.items():
        for iface in info["requires"]:
            provider_pkg = providers.get(iface)
            if provider_pkg and provider_pkg != pkg:
                edges[pkg].add(provider_pkg)

    in_degree: dict[str, int] = {pkg: len(deps) for pkg, deps in edges.items()}

    queue = sorted(pkg for pkg in pkg_names if in_degree[pkg] == 0)
    ordered: list[str] = []

    while queue:
        pkg = queue.pop(0)
        ordered.append(pkg)
        for other_pkg, deps in edges.items():
            if pkg in deps:
                in_degree[other_pkg] -= 1
                if in_degree[other_pkg] == 0:
                    queue.append(other_pkg)
                    queue.sort()

    remaining = [pkg for pkg in pkg_names if pkg not in ordered]
    if remaining:
        log.warning(
            f"Module load order: circular or unresolvable dependencies for "
            f"{remaining} — appending in discovery order."
        )
        ordered.extend(remaining)

    return ordered


# ---------------------------------------------------------------------------
# Background tasks
# ---------------------------------------------------------------------------

async def _expiry_sweep(registry: ModuleRegistry, interval: int):
    """Background task: announce licenses that passed their expiry date."""
    licenses = registry.require("LicenseService")
    while True:
        try:
            await asyncio.to_thread(licenses.expire_due)
        except Exception:
            log.warning("Expiry sweep failed", exc_info=True)
        await asyncio.sleep(interval)


# ---------------------------------------------------------------------------
# Middleware setup
# ---------------------------------------------------------------------------

def _setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Attach CORS, rate limiting, and security-headers middleware to the app."""
    install_rate_limiting(app, settings)

    _cors_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    if "*" in _cors_origins:
        log.warning(
            "CORS origin '*' is incompatible with allow_credentials=True — "
            "falling back to empty origins list. Set explicit origins in CORS_ORIGINS."
        )
        _cors_origins = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "Accept"],
    )


def _register_http_middleware(app: FastAPI) -> None:
    """Register the @app.middleware("http") security headers handler."""
    _CSP_SKIP_PREFIXES = (
        "/api/docs", "/api/redoc", "/api/v1/docs", "/api/v1/redoc", "/openapi.json"
    )
    _CSP_DIRECTIVES = "; ".join([
        "default-src 'none'",
        "frame-ancestors 'none'",
        "base-uri 'none'",
    ])

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        """Attach CSP and other security headers to every response."""
        response = await call_next(request)
        if not any(request.url.path.startswith(p) for p in _CSP_SKIP_PREFIXES):
            response.headers["Content-Security-Policy"] = _CSP_DIRECTIVES
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = (
                "max-age=63072000; includeSubDomains; preload"
            )
        return response


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    http_client: Optional[httpx.Client] = None,
    payment_processor: Optional[PaymentProcessor] = None,
) -> FastAPI:
    """Create and fully configure the RSL Platform FastAPI application.

    1. Build the core services for this app and register them as providers.
    2. Discover all modules under backend/modules/ and resolve load order by
       REQUIRES/IMPLEMENTS declarations.
    3. Call each module's register(app, registry) so routes and services exist
       before the first request arrives.
    4. The lifespan refuses to start without ENCRYPTION_KEY, opens the store, validates dependencies, wires event bus
       subscribers, and starts the expiry sweep; on shutdown it drains webhook
       delivery and closes the store.

    Every argument may be supplied by tests; anything omitted is built from
    settings.
    """
    if settings is None:
        from core.config import settings as default_settings
        settings = default_settings

    store = store or Store(settings.database_url)
    owns_http = http_client is None
    http_client = http_client or httpx.Client(
        timeout=settings.webhook_timeout_seconds,
        follow_redirects=False,
    )
    if payment_processor is None:
        from modules.policy.payments import MockPaymentProcessor
        payment_processor = MockPaymentProcessor()

    bus = InMemoryEventBus()
    registry = ModuleRegistry()
    registry.register_provider("Settings", settings)
    registry.register_provider("Store", store)
    registry.register_provider("EventBus", bus)
    registry.register_provider("AuditLog", AuditLog(store))
    registry.register_provider("SecretBox", SecretBox(settings.encryption_key))
    registry.register_provider("HttpClient", http_client)
    registry.register_provider("PaymentProcessor", payment_processor)

    pkg_names = _discover_modules()
    ordered_pkgs = _resolve_load_order(pkg_names)

    log.info(f"Module load order: {[p.split('.')[-1] for p in ordered_pkgs]}")

    # -----------------------------------------------------------------------
    # Lifespan (store, event bus, background tasks)
    # -----------------------------------------------------------------------
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not registry.require("SecretBox").configured:
            raise RuntimeError("ENCRYPTION_KEY is not set; generate one with: python -m core.crypto")

        store.open()

        if not registry.validate_dependencies():
            store.close()
            raise RuntimeError("Unsatisfied module dependencies; see log for details")

        for pkg in ordered_pkgs:
            mod = importlib.import_module(pkg)
            if hasattr(mod, "register_subscribers"):
                mod.register_subscribers(bus, registry)
        log.info("Event bus initialized with module subscribers")

        tokens = registry.require("TokenService")
        tokens.ensure_signing_key()
        tokens.ensure_default_client()

        sweep_task = asyncio.create_task(
            _expiry_sweep(registry, settings.expiry_sweep_interval_seconds)
        )
        yield
        sweep_task.cancel()
        if registry.has_provider("WebhookDispatcher"):
            registry.require("WebhookDispatcher").close()
        if owns_http:
            http_client.close()
        store.close()

    # -----------------------------------------------------------------------
    # FastAPI instance
    # -----------------------------------------------------------------------
    app = FastAPI(
        title="RSL Platform",
        description="Really Simple Licensing — content licensing, access tokens and usage webhooks",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api/v1/docs",
        redoc_url="/api/v1/redoc",
    )
    app.state.registry = registry
    app.state.settings = settings

    install_error_handlers(app, debug=settings.debug)
    _setup_middleware(app, settings)
    _register_http_middleware(app)

    # -----------------------------------------------------------------------
    # Health endpoint
    # -----------------------------------------------------------------------
    @app.get("/health", tags=["System"], include_in_schema=False)
    async def health_root():
        database_ok = store.is_open and store.ping()
        return {
            "status": "ok" if database_ok else "degraded",
            "version": __version__,
            "database": "ok" if database_ok else "unavailable",
        }

    # -----------------------------------------------------------------------
    # Module registration
    # -----------------------------------------------------------------------
    for pkg in ordered_pkgs:
        mod = importlib.import_module(pkg)
        registry.record_requires(
            getattr(mod, "MODULE_ID", pkg),
            getattr(mod, "REQUIRES", []),
        )
        if hasattr(mod, "register"):
            try:
                mod.register(app, registry)
                log.debug(f"Registered module: {pkg}")
            except Exception as exc:
                log.error(f"Failed to register module {pkg!r}: {exc}", exc_info=True)

    return app
