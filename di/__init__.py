"""
Kernel - Dependency Injection Module

Provides the IoC container that the composition root seeds with the kernel
components and every host service:
- String-keyed registrations
- Singleton, scoped and transient lifetimes
- Lazy factories that receive the container
- Forked child containers
- Idempotent disposal

Usage:
    from di import Container, ServiceLifetime

    container = Container()
    container.register_singleton("Indexer", lambda c: Indexer(c.resolve("Config")))
    indexer = container.resolve("Indexer")
"""

from di.container import (
    Container,
    ServiceDescriptor,
    ServiceLifetime,
)

__all__ = [
    "Container",            # Main DI container
    "ServiceDescriptor",    # Service registration metadata
    "ServiceLifetime",      # Singleton, Scoped, Transient
]
