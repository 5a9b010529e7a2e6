#!/usr/bin/env python3
"""
Proxmox Cluster Resource Exporter for Prometheus
Polls `pvesh get /cluster/resources` for guests, nodes and storage and
republishes the values as gauges on /metrics
"""

import subprocess
import time
import signal
import sys
import json
import threading
import socket
from wsgiref.simple_server import WSGIRequestHandler, make_server
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

import click
from prometheus_client import make_wsgi_app, Gauge, Info, Counter, Histogram
from prometheus_client.exposition import ThreadingWSGIServer
from prometheus_client.core import CollectorRegistry
from pydantic import (BaseModel, ConfigDict, Field, StrictFloat, StrictInt, TypeAdapter,
                      ValidationError, model_validator)
import logging

__version__ = '1.0.0'
BUILD_TIME = '1970-01-01T00:00:00Z'

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] %(message)s'
)
logger = logging.getLogger(__name__)

# Defaults
DEFAULT_LISTEN_ADDRESS = '[::]:9221'
DEFAULT_SCRAPE_INTERVAL = 10

RESOURCE_LABELS = ['id', 'name', 'node', 'template', 'type', 'vmid']
STORAGE_LABELS = ['id', 'name', 'node', 'type', 'plugintype', 'shared', 'content']


class ResourceType(str, Enum):
    """Resource categories understood by `pvesh get /cluster/resources --type`"""
    VM = 'vm'
    NODE = 'node'
    STORAGE = 'storage'


# Errors

class ExporterError(Exception):
    """Base class for exporter errors"""


class FetchError(ExporterError):
    """A resource listing could not be obtained"""

    def __init__(self, resource_type: ResourceType, message: str):
        self.resource_type = ResourceType(resource_type)
        super().__init__(f"{self.resource_type.value}: {message}")


class CommandFailure(FetchError):
    """pvesh could not be started or exited with a non-zero status"""

    def __init__(self, resource_type: ResourceType, message: str,
                 returncode: Optional[int] = None, stderr: str = ''):
        self.returncode = returncode
        self.stderr = stderr
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(resource_type, message)


class DecodeFailure(FetchError):
    """pvesh output is not JSON or does not match the record shape"""


class InternalFault(ExporterError):
    """Unexpected failure inside a collection cycle"""


# Records

class PveshRecord(BaseModel):
    """Common decoding rules for cluster resource entries"""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    @model_validator(mode='before')
    @classmethod
    def _drop_nulls(cls, data):
        # null behaves like an absent key and falls back to the zero value
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class VirtualMachine(PveshRecord):
    """A qemu guest or lxc container"""
    id: str = ''
    name: str = ''
    node: str = ''
    type: str = ''
    status: str = ''
    cpu: StrictFloat = 0.0
    disk: StrictInt = 0
    diskread: StrictInt = 0
    diskwrite: StrictInt = 0
    maxcpu: StrictInt = 0
    maxdisk: StrictInt = 0
    maxmem: StrictInt = 0
    mem: StrictInt = 0
    netin: StrictInt = 0
    netout: StrictInt = 0
    uptime: StrictInt = 0
    template: StrictInt = 0
    vmid: StrictInt = 0


class Node(PveshRecord):
    """A cluster member"""
    id: str = ''
    node: str = ''
    type: str = ''
    status: str = ''
    level: str = ''
    cgroup_mode: StrictInt = Field(default=0, alias='cgroup-mode')
    cpu: StrictFloat = 0.0
    disk: StrictInt = 0
    maxcpu: StrictInt = 0
    maxdisk: StrictInt = 0
    maxmem: StrictInt = 0
    mem: StrictInt = 0
    uptime: StrictInt = 0


class Storage(PveshRecord):
    """A storage backend as seen from one node"""
    id: str = ''
    storage: str = ''
    node: str = ''
    type: str = ''
    plugintype: str = ''
    content: str = ''
    status: str = ''
    disk: StrictInt = 0
    maxdisk: StrictInt = 0
    shared: StrictInt = 0


RECORD_MODELS = {
    ResourceType.VM: VirtualMachine,
    ResourceType.NODE: Node,
    ResourceType.STORAGE: Storage,
}

_LISTING_ADAPTERS = {rtype: TypeAdapter(List[model]) for rtype, model in RECORD_MODELS.items()}


class PveshFetcher:
    """Runs pvesh and decodes its JSON listings into records"""

    def __init__(self, executable='pvesh'):
        self.executable = executable

    def command(self, resource_type: ResourceType) -> List[str]:
        return [self.executable, 'get', '/cluster/resources',
                '--type', ResourceType(resource_type).value,
                '--output-format', 'json']

    def fetch(self, resource_type: ResourceType) -> list:
        """Return every record pvesh reports for one resource category.

        Raises CommandFailure if pvesh cannot be run or exits non-zero and
        DecodeFailure if its output does not decode into records.
        """
        resource_type = ResourceType(resource_type)
        cmd = self.command(resource_type)

        try:
            result = subprocess.run(cmd, capture_output=True)
        except OSError as e:
            raise CommandFailure(resource_type, f"error executing {self.executable}: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.decode('utf-8', errors='replace').strip()
            raise CommandFailure(
                resource_type,
                f"{self.executable} exited with status {result.returncode}",
                returncode=result.returncode,
                stderr=stderr,
            )

        try:
            payload = json.loads(result.stdout)
        except ValueError as e:
            raise DecodeFailure(resource_type, f"error parsing JSON: {e}") from e

        try:
            return _LISTING_ADAPTERS[resource_type].validate_python(payload)
        except ValidationError as e:
            raise DecodeFailure(resource_type, f"unexpected record shape: {e}") from e

    def fetch_vms(self) -> List[VirtualMachine]:
        return self.fetch(ResourceType.VM)

    def fetch_nodes(self) -> List[Node]:
        return self.fetch(ResourceType.NODE)

    def fetch_storage(self) -> List[Storage]:
        return self.fetch(ResourceType.STORAGE)


# Registry

class ResourceMetrics:
    """Fixed set of gauges on a private registry, shared by the scheduler and the HTTP server"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        # A private registry keeps the default process and platform collectors out
        self.registry = registry if registry is not None else CollectorRegistry()

        self._init_resource_metrics()
        self._init_storage_metrics()
        self._init_exporter_metrics()

    def _init_resource_metrics(self):
        """Gauges shared by guests and nodes"""
        self.resource_cpu = Gauge('pve_resource_cpu', 'CPU utilization',
                                  RESOURCE_LABELS, registry=self.registry)
        self.resource_disk = Gauge('pve_resource_disk', 'Used disk space in bytes',
                                   RESOURCE_LABELS, registry=self.registry)
        self.resource_diskread = Gauge('pve_resource_diskread',
                                       'The amount of bytes the guest read from its block devices since the guest was started',
                                       RESOURCE_LABELS, registry=self.registry)
        self.resource_diskwrite = Gauge('pve_resource_diskwrite',
                                        'The amount of bytes the guest wrote to its block devices since the guest was started',
                                        RESOURCE_LABELS, registry=self.registry)
        self.resource_maxcpu = Gauge('pve_resource_maxcpu', 'Number of available CPUs',
                                     RESOURCE_LABELS, registry=self.registry)
        self.resource_maxdisk = Gauge('pve_resource_maxdisk', 'Storage size in bytes',
                                      RESOURCE_LABELS, registry=self.registry)
        self.resource_maxmem = Gauge('pve_resource_maxmem', 'Number of available memory in bytes',
                                     RESOURCE_LABELS, registry=self.registry)
        self.resource_mem = Gauge('pve_resource_mem', 'Used memory in bytes',
                                  RESOURCE_LABELS, registry=self.registry)
        self.resource_netin = Gauge('pve_resource_netin',
                                    'The amount of traffic in bytes that was sent to the guest over the network since it was started',
                                    RESOURCE_LABELS, registry=self.registry)
        self.resource_netout = Gauge('pve_resource_netout',
                                     'The amount of traffic in bytes that was sent from the guest over the network since it was started',
                                     RESOURCE_LABELS, registry=self.registry)
        self.resource_uptime = Gauge('pve_resource_uptime', 'Uptime of node or virtual guest in seconds',
                                     RESOURCE_LABELS, registry=self.registry)
        self.resource_status = Gauge('pve_resource_status', 'Resource status (1=running/online, 0=other)',
                                     RESOURCE_LABELS, registry=self.registry)

    def _init_storage_metrics(self):
        """Storage gauges"""
        self.storage_disk = Gauge('pve_storage_disk', 'Used disk space in bytes',
                                  STORAGE_LABELS, registry=self.registry)
        self.storage_maxdisk = Gauge('pve_storage_maxdisk', 'Storage size in bytes',
                                     STORAGE_LABELS, registry=self.registry)
        self.storage_status = Gauge('pve_storage_status', 'Storage status (1=available, 0=other)',
                                    STORAGE_LABELS, registry=self.registry)

    def _init_exporter_metrics(self):
        """Exporter statistics"""
        self.collection_errors = Counter('pve_exporter_collection_errors', 'Collection errors',
                                         ['collector'], registry=self.registry)
        self.collection_duration = Histogram('pve_exporter_collection_duration_seconds', 'Collection duration',
                                             ['collector'], registry=self.registry)
        self.collection_success = Gauge('pve_exporter_collection_success',
                                        'Whether the last collection succeeded',
                                        ['collector'], registry=self.registry)
        self.collection_last_success = Gauge('pve_exporter_collection_last_success_timestamp_seconds',
                                             'Unix time of the last successful collection',
                                             ['collector'], registry=self.registry)
        self.exporter_info = Info('pve_exporter', 'Exporter information', registry=self.registry)
        self.exporter_info.info({'version': __version__, 'build_time': BUILD_TIME})


# Label derivation

def status_value(status: str, up_state: str) -> float:
    """Project a status string onto 1 (up) or 0 (anything else)"""
    return 1.0 if status == up_state else 0.0


def normalize_content(content: str) -> str:
    """Sort a comma separated content list so the label does not depend on source order"""
    return ','.join(sorted(content.split(',')))


def vm_labels(vm: VirtualMachine) -> Tuple[str, ...]:
    return (f"node/{vm.node}/{vm.id}", vm.name, vm.node,
            str(vm.template), vm.type, str(vm.vmid))


def node_labels(node: Node) -> Tuple[str, ...]:
    # Nodes have no template flag or vmid; "0" keeps the label set shared with guests
    return (node.id, node.node, node.node, '0', node.type, '0')


def storage_labels(storage: Storage) -> Tuple[str, ...]:
    return (storage.id, storage.storage, storage.node, storage.type,
            storage.plugintype, str(storage.shared), normalize_content(storage.content))


# Publishers

def publish_vm_metrics(metrics: ResourceMetrics, vms: List[VirtualMachine]):
    """Write guest records into the resource gauges"""
    for vm in vms:
        labels = vm_labels(vm)
        metrics.resource_cpu.labels(*labels).set(float(vm.cpu))
        metrics.resource_disk.labels(*labels).set(float(vm.disk))
        metrics.resource_diskread.labels(*labels).set(float(vm.diskread))
        metrics.resource_diskwrite.labels(*labels).set(float(vm.diskwrite))
        metrics.resource_maxcpu.labels(*labels).set(float(vm.maxcpu))
        metrics.resource_maxdisk.labels(*labels).set(float(vm.maxdisk))
        metrics.resource_maxmem.labels(*labels).set(float(vm.maxmem))
        metrics.resource_mem.labels(*labels).set(float(vm.mem))
        metrics.resource_netin.labels(*labels).set(float(vm.netin))
        metrics.resource_netout.labels(*labels).set(float(vm.netout))
        metrics.resource_uptime.labels(*labels).set(float(vm.uptime))
        metrics.resource_status.labels(*labels).set(status_value(vm.status, 'running'))


def publish_node_metrics(metrics: ResourceMetrics, nodes: List[Node]):
    """Write node records into the resource gauges"""
    for node in nodes:
        labels = node_labels(node)
        metrics.resource_cpu.labels(*labels).set(float(node.cpu))
        metrics.resource_disk.labels(*labels).set(float(node.disk))
        metrics.resource_maxcpu.labels(*labels).set(float(node.maxcpu))
        metrics.resource_maxdisk.labels(*labels).set(float(node.maxdisk))
        metrics.resource_maxmem.labels(*labels).set(float(node.maxmem))
        metrics.resource_mem.labels(*labels).set(float(node.mem))
        metrics.resource_uptime.labels(*labels).set(float(node.uptime))
        metrics.resource_status.labels(*labels).set(status_value(node.status, 'online'))


def publish_storage_metrics(metrics: ResourceMetrics, storages: List[Storage]):
    """Write storage records into the storage gauges"""
    for storage in storages:
        labels = storage_labels(storage)
        metrics.storage_disk.labels(*labels).set(float(storage.disk))
        metrics.storage_maxdisk.labels(*labels).set(float(storage.maxdisk))
        metrics.storage_status.labels(*labels).set(status_value(storage.status, 'available'))


# Collection

@dataclass
class CollectionResult:
    """Outcome of one collector run"""
    collector: str
    records: int = 0
    duration: float = 0.0
    error: Optional[ExporterError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ResourceCollector:
    """Fetches each resource category and publishes it into the registry"""

    def __init__(self, metrics: ResourceMetrics, fetcher: Optional[PveshFetcher] = None):
        self.metrics = metrics
        self.fetcher = fetcher if fetcher is not None else PveshFetcher()
        self.collectors = [
            (ResourceType.VM.value, self.collect_vm_metrics),
            (ResourceType.NODE.value, self.collect_node_metrics),
            (ResourceType.STORAGE.value, self.collect_storage_metrics),
        ]

    def _collect(self, resource_type: ResourceType, publish) -> CollectionResult:
        start = time.monotonic()
        try:
            records = self.fetcher.fetch(resource_type)
        except FetchError as e:
            return CollectionResult(resource_type.value, duration=time.monotonic() - start, error=e)

        # Decoding is complete here, a failed fetch never reaches the gauges
        publish(self.metrics, records)
        return CollectionResult(resource_type.value, records=len(records),
                                duration=time.monotonic() - start)

    def collect_vm_metrics(self) -> CollectionResult:
        return self._collect(ResourceType.VM, publish_vm_metrics)

    def collect_node_metrics(self) -> CollectionResult:
        return self._collect(ResourceType.NODE, publish_node_metrics)

    def collect_storage_metrics(self) -> CollectionResult:
        return self._collect(ResourceType.STORAGE, publish_storage_metrics)

    def collect_all_metrics(self) -> List[CollectionResult]:
        """Run every collector in order; one failing does not stop the rest"""
        logger.debug("Starting metric collection cycle...")

        results = []
        for name, func in self.collectors:
            try:
                result = func()
            except Exception as e:
                logger.exception(f"Collector {name} crashed")
                result = CollectionResult(name, error=InternalFault(f"{name}: {e!r}"))
            self.record(result)
            results.append(result)

        logger.debug("Metric collection cycle completed")
        return results

    def record(self, result: CollectionResult):
        """Log a collector result and update the exporter statistics"""
        name = result.collector
        if result.ok:
            self.metrics.collection_duration.labels(collector=name).observe(result.duration)
            self.metrics.collection_success.labels(collector=name).set(1)
            self.metrics.collection_last_success.labels(collector=name).set_to_current_time()
            logger.debug(f"Collector {name} published {result.records} records in {result.duration:.3f}s")
        else:
            logger.error(f"Error fetching {name} metrics: {result.error}")
            self.metrics.collection_errors.labels(collector=name).inc()
            self.metrics.collection_success.labels(collector=name).set(0)


class CollectionScheduler(threading.Thread):
    """Background thread running collection cycles on a fixed period"""

    def __init__(self, collector: ResourceCollector, interval: float = DEFAULT_SCRAPE_INTERVAL):
        super().__init__(name='pve-collector', daemon=True)
        if interval <= 0:
            raise ValueError(f"scrape interval must be positive, got {interval}")
        self.collector = collector
        self.interval = interval
        self._stop_event = threading.Event()

    def run_cycle(self) -> List[CollectionResult]:
        return self.collector.collect_all_metrics()

    def run(self):
        """Main loop"""
        next_run = time.monotonic()
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                logger.exception(f"Error in collection loop: {e}")

            # Cycles never overlap; ticks missed by a slow cycle are dropped
            next_run += self.interval
            now = time.monotonic()
            if next_run <= now:
                missed = int((now - next_run) // self.interval) + 1
                next_run += missed * self.interval
            self._stop_event.wait(next_run - now)

    def stop(self):
        self._stop_event.set()


# HTTP server

METRICS_PATH = '/metrics'


class _MetricsRequestHandler(WSGIRequestHandler):
    """Request handler that logs access lines at debug level instead of stderr"""

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")


def parse_listen_address(address: str) -> Tuple[str, int]:
    """Split host:port, accepting bracketed IPv6 hosts like [::]:9221.

    An empty host (":9221") listens on every interface, IPv4 and IPv6.
    """
    host, sep, port = address.rpartition(':')
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address {address!r}, expected host:port")

    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]
    elif ':' in host:
        raise ValueError(f"IPv6 host must be in brackets: {address!r}")

    port_number = int(port)
    if port_number > 65535:
        raise ValueError(f"port out of range in {address!r}")
    return host or '::', port_number


def make_metrics_app(registry: CollectorRegistry):
    """WSGI app serving the registry on /metrics and 404 everywhere else"""
    exposition = make_wsgi_app(registry)

    def app(environ, start_response):
        if environ.get('PATH_INFO') != METRICS_PATH:
            start_response('404 Not Found', [('Content-Type', 'text/plain; charset=utf-8')])
            return [b'404 page not found\n']
        return exposition(environ, start_response)

    return app


def start_metrics_server(address: str, registry: CollectorRegistry):
    """Serve the registry over HTTP from background threads.

    Returns the server and the thread running it.
    """
    host, port = parse_listen_address(address)
    family = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)[0][0]

    class MetricsServer(ThreadingWSGIServer):
        address_family = family

        def server_bind(self):
            if self.address_family == socket.AF_INET6:
                # Accept IPv4 clients on "::" as well
                self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            super().server_bind()

    httpd = make_server(host, port, make_metrics_app(registry), MetricsServer,
                        handler_class=_MetricsRequestHandler)
    thread = threading.Thread(target=httpd.serve_forever, name='pve-metrics-http', daemon=True)
    thread.start()
    return httpd, thread


# Entry point

def signal_handler(signum, frame):
    """Exit cleanly on SIGINT/SIGTERM"""
    logger.info(f"Received {signal.Signals(signum).name}, exiting")
    sys.exit(0)


def _listen_address_option(ctx, param, value):
    try:
        parse_listen_address(value)
    except ValueError as e:
        raise click.BadParameter(str(e))
    return value


@click.command(context_settings={'help_option_names': ['-h', '-help', '--help']})
@click.option('-version', '--version', 'show_version', is_flag=True,
              help='Print version and build time')
@click.option('-web.listen-address', '--web.listen-address', 'listen_address',
              default=DEFAULT_LISTEN_ADDRESS, show_default=True, callback=_listen_address_option,
              help='Address on which to expose metrics and web server; an empty host listens on all interfaces')
@click.option('-runtime.scrape_interval', '--runtime.scrape_interval', 'scrape_interval',
              type=click.IntRange(min=1), default=DEFAULT_SCRAPE_INTERVAL, show_default=True,
              help='Interval in seconds to scrape proxmox metrics')
def main(show_version, listen_address, scrape_interval):
    """Main entry point"""
    if show_version:
        click.echo(f"Prometheus Proxmox Exporter Version: {__version__}")
        click.echo(f"Build Time: {BUILD_TIME}")
        return

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    metrics = ResourceMetrics()
    collector = ResourceCollector(metrics)
    scheduler = CollectionScheduler(collector, interval=scrape_interval)

    try:
        server, server_thread = start_metrics_server(listen_address, metrics.registry)
    except OSError as e:
        logger.error(f"Fatal error: cannot listen on {listen_address}: {e}")
        sys.exit(1)

    scheduler.start()
    logger.info(f"Prometheus proxmox exporter server started on {listen_address}")
    logger.info(f"Scraping pvesh every {scrape_interval}s")

    server_thread.join()


if __name__ == '__main__':
    main()
