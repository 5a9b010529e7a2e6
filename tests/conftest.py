"""Shared fixtures for exporter tests."""

import pytest

from pve_resource_exporter import Node, ResourceMetrics, Storage, VirtualMachine

from helpers import NODE_LISTING, STORAGE_LISTING, VM_LISTING


@pytest.fixture
def metrics():
    return ResourceMetrics()


@pytest.fixture
def vms():
    return [VirtualMachine.model_validate(item) for item in VM_LISTING]


@pytest.fixture
def nodes():
    return [Node.model_validate(item) for item in NODE_LISTING]


@pytest.fixture
def storages():
    return [Storage.model_validate(item) for item in STORAGE_LISTING]
