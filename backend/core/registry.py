# core/registry.py — Module Registry for dependency injection
#
# Holds the per-application service instances (Store, AuditLog, EventBus,
# PaymentProcessor, and each module's service) under interface names.
# Modules register what they IMPLEMENTS; routes resolve what they need through
# core.dependencies.get_service(). validate_dependencies() checks that every
# REQUIRES declaration is satisfied before the app starts serving.

import logging
from typing import Any

log = logging.getLogger("rsl.registry")


class MissingProviderError(LookupError):
    """Raised by require() when no provider is registered under a name."""


class ModuleRegistry:
    """
    Lightweight dependency injection registry.

    One registry exists per application instance, so two apps built in the
    same process (tests) never see each other's services.
    """

    def __init__(self):
        self._providers: dict[str, Any] = {}
        # (module_id, interface) pairs collected while modules load
        self._declared_requires: list[tuple[str, str]] = []

    def register_provider(self, interface_name: str, impl: Any) -> None:
        """Register an implementation for the named interface.

        Last writer wins; a warning is logged when a different object replaces
        an existing registration.
        """
        existing = self._providers.get(interface_name)
        if existing is not None and existing is not impl:
            log.warning(
                f"Interface '{interface_name}' already registered by "
                f"{type(existing).__name__!r}; overwriting with "
                f"{type(impl).__name__!r}"
            )
        self._providers[interface_name] = impl
        log.debug(f"Registered provider for '{interface_name}': {type(impl).__name__}")

    def get_provider(self, interface_name: str) -> Any:
        """Return the registered provider for an interface, or None."""
        provider = self._providers.get(interface_name)
        if provider is None:
            log.warning(
                f"No provider registered for interface '{interface_name}'. "
                "Check that the required module is loaded."
            )
        return provider

    def require(self, interface_name: str) -> Any:
        """Return the provider for an interface or raise MissingProviderError."""
        try:
            return self._providers[interface_name]
        except KeyError:
            raise MissingProviderError(
                f"No provider registered for interface '{interface_name}'"
            ) from None

    def has_provider(self, interface_name: str) -> bool:
        return interface_name in self._providers

    def record_requires(self, module_id: str, requires: list[str]) -> None:
        """Record the REQUIRES list for a module so validate_dependencies() can check it."""
        for iface in requires:
            self._declared_requires.append((module_id, iface))

    def validate_dependencies(self) -> bool:
        """Check that all REQUIRES declarations have registered providers.

        Logs errors for any unsatisfied dependency and returns False; the app
        factory decides whether to abort.
        """
        missing = [
            (module_id, iface)
            for module_id, iface in self._declared_requires
            if iface not in self._providers
        ]
        for module_id, interface_name in missing:
            log.error(
                f"Unsatisfied dependency: module '{module_id}' requires "
                f"'{interface_name}' but no provider is registered."
            )
        if missing:
            return False

        log.info(
            f"All module dependencies satisfied "
            f"({len(self._declared_requires)} declarations checked)."
        )
        return True

    @property
    def providers(self) -> dict[str, Any]:
        """Read-only view of all registered providers."""
        return dict(self._providers)
