"""Test helpers for firmware rollout tests."""

from .fakes import (
    CatalogComponent,
    FakeCredentialResolver,
    FakeProtocolClient,
    FakeVirtualizationManager,
    build_catalog,
    fake_clients,
    make_gap,
    make_host,
    make_target,
)

__all__ = [
    "CatalogComponent",
    "FakeCredentialResolver",
    "FakeProtocolClient",
    "FakeVirtualizationManager",
    "build_catalog",
    "fake_clients",
    "make_gap",
    "make_host",
    "make_target",
]
