"""Canned pvesh listings and test doubles."""

import json
import subprocess


VM_LISTING = [
    {
        "id": "qemu/100", "name": "web", "node": "pve1", "type": "qemu",
        "status": "running", "vmid": 100, "template": 0,
        "cpu": 0.5, "maxcpu": 4, "mem": 1073741824, "maxmem": 4294967296,
        "disk": 0, "maxdisk": 34359738368, "diskread": 1024, "diskwrite": 2048,
        "netin": 4096, "netout": 8192, "uptime": 3600,
    },
    {
        "id": "qemu/101", "name": "db", "node": "pve1", "type": "qemu",
        "status": "stopped", "vmid": 101, "template": 0,
        "cpu": 0, "maxcpu": 2, "mem": 0, "maxmem": 2147483648,
        "disk": 0, "maxdisk": 17179869184, "diskread": 0, "diskwrite": 0,
        "netin": 0, "netout": 0, "uptime": 0,
    },
]

NODE_LISTING = [
    {
        "id": "node/pve1", "node": "pve1", "type": "node", "status": "online",
        "level": "", "cgroup-mode": 2, "cpu": 0.12, "maxcpu": 16,
        "mem": 8589934592, "maxmem": 68719476736, "disk": 5368709120,
        "maxdisk": 107374182400, "uptime": 86400,
    },
    {
        "id": "node/pve2", "node": "pve2", "type": "node", "status": "offline",
    },
]

STORAGE_LISTING = [
    {
        "id": "storage/pve1/local", "storage": "local", "node": "pve1",
        "type": "storage", "plugintype": "dir", "shared": 0,
        "content": "vztmpl,iso,backup", "status": "available",
        "disk": 1000, "maxdisk": 5000,
    },
    {
        "id": "storage/pve1/nfs", "storage": "nfs", "node": "pve1",
        "type": "storage", "plugintype": "nfs", "shared": 1,
        "content": "images", "status": "unknown",
        "disk": 0, "maxdisk": 0,
    },
]

WEB_VM_LABELS = {
    "id": "node/pve1/qemu/100", "name": "web", "node": "pve1",
    "template": "0", "type": "qemu", "vmid": "100",
}

DB_VM_LABELS = {
    "id": "node/pve1/qemu/101", "name": "db", "node": "pve1",
    "template": "0", "type": "qemu", "vmid": "101",
}

PVE1_NODE_LABELS = {
    "id": "node/pve1", "name": "pve1", "node": "pve1",
    "template": "0", "type": "node", "vmid": "0",
}

LOCAL_STORAGE_LABELS = {
    "id": "storage/pve1/local", "name": "local", "node": "pve1", "type": "storage",
    "plugintype": "dir", "shared": "0", "content": "backup,iso,vztmpl",
}


def completed(stdout=b"", returncode=0, stderr=b""):
    """Build a subprocess result as pvesh would return it."""
    if not isinstance(stdout, bytes):
        stdout = json.dumps(stdout).encode()
    return subprocess.CompletedProcess(args=["pvesh"], returncode=returncode,
                                       stdout=stdout, stderr=stderr)


class FakeFetcher:
    """Serves canned records per resource type; an exception value is raised instead."""

    def __init__(self, listings):
        self.listings = listings
        self.calls = []

    def fetch(self, resource_type):
        self.calls.append(resource_type.value)
        outcome = self.listings[resource_type.value]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome
