"""Crawl orchestrator: walks a network from its root device outwards.

``ScanManager`` owns one ``Crawl`` per network. A crawl runs on its own
coordinator thread and fans work items out to a bounded
``ThreadPoolExecutor``; each work item is one device address. Every device is
claimed by MAC before it is persisted or enqueued, so looped and multiply
bridged networks are walked once and each device ends up under the interface
it was first discovered through.
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional

from loguru import logger

from topomapper.categorize import detect_device_type, type_from_vendor, vendor_from_banner
from topomapper.credentials import CredentialCache, CredentialResolver
from topomapper.drivers.base import BaseDriver, FetchContext
from topomapper.drivers.registry import select_driver
from topomapper.drivers.routeros import PROBE_COMMAND
from topomapper.enrichment.mdns import scan_mdns
from topomapper.enrichment.oui import load_oui_db, lookup_vendor
from topomapper.enrichment.ports import SSH_PORT, probe_ports, probe_ports_via
from topomapper.enrichment.snmp import query_system
from topomapper.events import EventBus
from topomapper.exceptions import (
    AuthenticationFailed,
    ConnectTimeout,
    InternalFailure,
    NotFound,
    ParseIncomplete,
    ScanAlreadyRunning,
    StoreError,
    TopologyError,
    TransportError,
)
from topomapper.models import (
    ChannelInfo,
    Credential,
    CredentialTestResult,
    Device,
    DeviceInfo,
    DeviceMac,
    DeviceType,
    DhcpLease,
    DhcpLeaseInfo,
    Interface,
    LogLevel,
    MdnsDevice,
    NeighborInfo,
    NeighborSource,
    Network,
    Scan,
    ScanLog,
    ScanStatus,
    ScanStatusReport,
    SnmpDeviceInfo,
    TopologyResponse,
    utcnow,
)
from topomapper.session.transport import BaseTransport, open_session
from topomapper.settings import CrawlSettings
from topomapper.store import MemoryStore, RecordStore
from topomapper.topology import build_topology

Connector = Callable[..., BaseTransport]
PortProbe = Callable[[str, list[int], float], list[int]]
MdnsScan = Callable[[float], dict[str, MdnsDevice]]
SnmpQuery = Callable[[str, str, float], Optional[SnmpDeviceInfo]]
OuiLoader = Callable[[], dict[str, str]]

MIKROTIK_PORTS = (8291, 8728)
TELNET_PORT = 23

_LOGURU_LEVELS = {
    LogLevel.INFO: "INFO",
    LogLevel.SUCCESS: "SUCCESS",
    LogLevel.WARN: "WARNING",
    LogLevel.ERROR: "ERROR",
}


def synthetic_mac(ip: str) -> str:
    """Placeholder MAC for a device whose hardware address is unknown."""
    return f"UNKNOWN-{ip.replace('.', '-')}"


def ordinal(n: int) -> str:
    suffix = "th" if 10 <= n % 100 <= 20 else {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def identify_and_fetch(
    transport: BaseTransport, ctx: FetchContext, vendor_hint: Optional[str] = None
) -> tuple[BaseDriver, DeviceInfo, Optional[str]]:
    """Pick a driver for the connected device and fetch its ``DeviceInfo``.

    The banner and the MAC vendor are consulted first. Shell-only dialects
    drop the connection on an exec request, so the exec probe only runs when
    that first pick is an exec driver.

    Returns:
        (driver, info, vendor)
    """
    banner = transport.banner
    driver = select_driver(banner, vendor_hint)
    probe = ""
    if not driver.uses_shell:
        probe = driver.exec_quiet(transport, PROBE_COMMAND, ctx)
        driver = select_driver(f"{banner}\n{probe}", vendor_hint)
    ctx.log(LogLevel.INFO, f"{ctx.host}: Using driver {driver.name}")
    info = driver.fetch(transport, ctx)
    vendor = driver.vendor or vendor_from_banner(f"{banner}\n{probe}") or vendor_hint
    return driver, info, vendor


@dataclass(eq=False)
class WorkItem:
    """One device address queued for discovery."""

    ip: str
    mac: Optional[str] = None
    parent_interface_id: Optional[str] = None
    upstream_interface: Optional[str] = None
    parent_ip: Optional[str] = None
    is_root: bool = False


@dataclass
class _Login:
    transport: BaseTransport
    credential: Credential
    attempt: int


class VisitedSet:
    """MACs claimed during one crawl; a claim is an atomic compare-and-set."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owners: dict[str, object] = {}

    def claim(self, mac: str, owner: object) -> bool:
        """True if ``owner`` now holds ``mac`` (newly, or already)."""
        with self._lock:
            return self._owners.setdefault(mac.upper(), owner) is owner

    def __contains__(self, mac: str) -> bool:
        with self._lock:
            return mac.upper() in self._owners

    def __len__(self) -> int:
        with self._lock:
            return len(self._owners)


class Crawl:
    """One end-to-end run of discovery over a network."""

    def __init__(
        self,
        network: Network,
        store: RecordStore,
        bus: EventBus,
        resolver: CredentialResolver,
        settings: CrawlSettings,
        connector: Connector = open_session,
        port_probe: PortProbe = probe_ports,
        mdns_scan: MdnsScan = scan_mdns,
        snmp_query: SnmpQuery = query_system,
        oui_loader: OuiLoader = load_oui_db,
    ):
        self.network = network
        self.store = store
        self.bus = bus
        self.resolver = resolver
        self.settings = settings
        self.connector = connector
        self.port_probe = port_probe
        self.mdns_scan = mdns_scan
        self.snmp_query = snmp_query
        self.oui_loader = oui_loader

        self.scan = Scan(network_id=network.id, root_ip=network.root_ip)
        self.visited = VisitedSet()
        self.device_count = 0
        self.root_reachable = False
        self.oui_db: dict[str, str] = {}
        self.mdns: dict[str, MdnsDevice] = {}
        self.jump_host: Optional[BaseTransport] = None

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._done = threading.Event()
        self._seq = 0
        self._started = 0.0
        self._snmp_cache: dict[str, Optional[SnmpDeviceInfo]] = {}
        self._channels: dict[str, ChannelInfo] = {}
        self._channel_counter = 0

    # ── lifecycle ─────────────────────────────────────────────────────

    @property
    def network_id(self) -> str:
        return self.network.id

    @property
    def is_running(self) -> bool:
        return self.scan.status == ScanStatus.RUNNING and not self._done.is_set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    @property
    def log_count(self) -> int:
        return self._seq

    def begin(self) -> Scan:
        """Create the Scan record and announce the running status."""
        self.store.upsert(self.scan)
        self.bus.publish_status(self.network_id, ScanStatus.RUNNING)
        return self.scan

    def stop(self) -> None:
        """Ask the crawl to stop; in-flight devices are finished first."""
        self._stop.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def run(self) -> Scan:
        """Run the crawl to completion on the calling thread."""
        self._started = time.monotonic()
        try:
            self._prepare()
            if not self.stop_requested:
                self._crawl()
            self._complete()
        except TopologyError as e:
            self._fail(e)
        except Exception as e:
            logger.exception(f"Unexpected error in scan {self.scan.id}")
            self._fail(InternalFailure(str(e)))
        finally:
            self._done.set()
        return self.scan

    # ── logging and progress ──────────────────────────────────────────

    def log(self, level: LogLevel, message: str) -> None:
        """Persist a ScanLog line, publish it, and mirror it to loguru."""
        with self._lock:
            self._seq += 1
            seq = self._seq
        logger.log(_LOGURU_LEVELS[level], message)
        entry = ScanLog(scan_id=self.scan.id, seq=seq, level=level, message=message)
        self.store.upsert(entry)
        self.bus.publish_log(self.network_id, level, message)

    def channels(self) -> list[ChannelInfo]:
        with self._lock:
            return [c.model_copy() for c in self._channels.values()]

    def _start_channel(self, ip: str, action: str) -> str:
        with self._lock:
            self._channel_counter += 1
            channel_id = f"ch-{self._channel_counter}"
            self._channels[channel_id] = ChannelInfo(id=channel_id, ip=ip, action=action)
        self.bus.publish_channels(self.network_id, self.channels())
        return channel_id

    def _update_channel(self, channel_id: str, action: str) -> None:
        with self._lock:
            channel = self._channels.get(channel_id)
            if channel is None:
                return
            channel.action = action
        self.bus.publish_channels(self.network_id, self.channels())

    def _end_channel(self, channel_id: str) -> None:
        with self._lock:
            self._channels.pop(channel_id, None)
        self.bus.publish_channels(self.network_id, self.channels())

    def _publish_topology(self) -> Optional[TopologyResponse]:
        if not self.bus.subscriber_count(self.network_id):
            return None
        topology = build_topology(self.store, self.network_id)
        self.bus.publish_topology(self.network_id, topology)
        return topology

    # ── phases ────────────────────────────────────────────────────────

    def _prepare(self) -> None:
        network = self.network
        self.log(LogLevel.INFO, f"Starting scan of network: {network.name}")
        self.log(LogLevel.INFO, f"Root device: {network.root_ip}")

        candidates = self.resolver.ordered(network)
        failed = self.resolver.cache.failure_count()
        skipped = f" ({failed} known failures will be skipped)" if failed else ""
        self.log(LogLevel.INFO, f"Loaded {len(candidates)} credentials to try{skipped}")

        if self.settings.enable_mdns:
            self.log(LogLevel.INFO, "Scanning for mDNS/Bonjour devices...")
            self.mdns = self.mdns_scan(self.settings.mdns_window)
            if self.mdns:
                self.log(LogLevel.SUCCESS, f"mDNS: Found {len(self.mdns)} devices with hostnames")
                for ip, device in self.mdns.items():
                    services = f" ({', '.join(device.services)})" if device.services else ""
                    self.log(LogLevel.INFO, f"  {ip}: {device.hostname}{services}")
            else:
                self.log(LogLevel.INFO, "mDNS: No devices found")

        self.oui_db = self.oui_loader()

        if self.stop_requested:
            self.log(LogLevel.WARN, "Scan cancelled before starting")
            return
        self._reset_positions()

    def _reset_positions(self) -> None:
        """Drop interfaces and leases of the network and detach its devices.

        Devices themselves stay so that user-managed fields survive; every
        device the crawl re-discovers gets its position back.
        """
        for device in self.store.list_by_network(Device, self.network_id):
            self.store.delete_where(Interface, device_id=device.id)
            device.network_id = None
            device.parent_interface_id = None
            device.upstream_interface = None
            device.own_upstream_interface = None
            self.store.upsert(device)
        self.store.delete_where(DhcpLease, network_id=self.network_id)

    def _crawl(self) -> None:
        workers = self.settings.workers
        queue: deque[WorkItem] = deque([WorkItem(ip=self.network.root_ip, is_root=True)])
        pending: dict[concurrent.futures.Future[list[WorkItem]], WorkItem] = {}

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"crawl-{self.network_id[:8]}"
        ) as pool:
            try:
                while queue or pending:
                    while queue and len(pending) < workers and not self.stop_requested:
                        item = queue.popleft()
                        pending[pool.submit(self._visit, item)] = item
                    if not pending:
                        break
                    done, _ = concurrent.futures.wait(pending, return_when=concurrent.futures.FIRST_COMPLETED)
                    for future in done:
                        pending.pop(future)
                        queue.extend(future.result())
                    self._publish_topology()
            except BaseException:
                self._stop.set()
                raise

        if self.stop_requested and queue:
            logger.debug(f"Scan {self.scan.id} stopped with {len(queue)} queued devices left")

    def _complete(self) -> None:
        self._close_jump_host()
        stopped = self.stop_requested
        duration = time.monotonic() - self._started
        now = utcnow()

        self.scan.status = ScanStatus.STOPPED if stopped else ScanStatus.COMPLETED
        self.scan.completed_at = now
        self.scan.device_count = self.device_count
        self.store.upsert(self.scan)

        network = self.store.get(Network, self.network_id) or self.network
        network.last_scanned_at = now
        network.device_count = self.device_count
        network.is_online = self.root_reachable
        self.network = self.store.upsert(network)

        if stopped:
            self.log(LogLevel.WARN, "Scan cancelled by user")
            self.log(LogLevel.INFO, f"Partial results saved: {self.device_count} devices")
        else:
            self.log(LogLevel.SUCCESS, f"Scan complete! Found {self.device_count} devices in {duration:.1f}s")
        self.bus.publish_topology(self.network_id, build_topology(self.store, self.network_id))
        self.bus.publish_status(self.network_id, self.scan.status)

    def _fail(self, error: Exception) -> None:
        message = str(error) or type(error).__name__
        self.scan.status = ScanStatus.FAILED
        self.scan.completed_at = utcnow()
        self.scan.device_count = self.device_count
        self.scan.error = message
        try:
            self._close_jump_host()
            self.log(LogLevel.ERROR, f"Scan failed: {message}")
            self.store.upsert(self.scan)
        except StoreError as e:
            logger.error(f"Scan {self.scan.id}: cannot record failure: {e}")
        self.bus.publish_status(self.network_id, ScanStatus.FAILED, error=message)

    # ── per-device work ───────────────────────────────────────────────

    def _visit(self, item: WorkItem) -> list[WorkItem]:
        """Scan one device; failures stay with the device unless the store broke."""
        if self.stop_requested:
            return []
        try:
            return self._scan_device(item)
        except InternalFailure:
            raise
        except StoreError as e:
            raise InternalFailure(f"{item.ip}: {e}") from e
        except Exception as e:
            logger.opt(exception=e).debug(f"{item.ip}: device scan raised")
            self.log(LogLevel.ERROR, f"{item.ip}: Device scan failed: {e}")
            return []

    def _scan_device(self, item: WorkItem) -> list[WorkItem]:
        ip = item.ip
        channel_id = self._start_channel(ip, "scanning ports")
        try:
            self.log(LogLevel.INFO, f"Scanning {ip}...")
            open_ports = self._open_ports(item)
            if item.is_root:
                self.root_reachable = bool(open_ports)

            if not open_ports:
                self.log(LogLevel.INFO, f"{ip}: No management ports open - adding as end-device")
                self._record_passive(
                    mac=item.mac or synthetic_mac(ip),
                    ip=ip,
                    parent_interface_id=item.parent_interface_id,
                    upstream_interface=item.upstream_interface,
                    owner=item,
                    log_prefix=ip,
                )
                return []
            self.log(LogLevel.INFO, f"{ip}: Open ports: {', '.join(str(p) for p in open_ports)}")

            existing = self.store.get_by_mac(item.mac) if item.mac else None
            skip_login = bool(existing and existing.skip_login)
            login: Optional[_Login] = None
            if skip_login:
                self.log(LogLevel.INFO, f"{ip}: Skipping SSH login (disabled in device settings)")
            elif SSH_PORT in open_ports:
                self._update_channel(channel_id, "testing credentials")
                login = self._login(item)
            elif any(p in open_ports for p in MIKROTIK_PORTS):
                self.log(
                    LogLevel.WARN,
                    f"{ip}: SSH port (22) not open - MikroTik API/WinBox ports detected but SSH is disabled on this device",
                )
            elif TELNET_PORT in open_ports:
                self.log(LogLevel.WARN, f"{ip}: SSH port (22) not open - only Telnet (23) available (not supported)")
            else:
                self.log(LogLevel.WARN, f"{ip}: SSH port (22) not open - cannot login to collect device info")

            driver: Optional[BaseDriver] = None
            info: Optional[DeviceInfo] = None
            vendor: Optional[str] = None
            if login is not None:
                self._update_channel(channel_id, "fetching device info")
                transport = login.transport
                keep_open = False
                try:
                    try:
                        driver, info, vendor = self._fetch(item, login)
                    except (InternalFailure, StoreError):
                        raise
                    except Exception as e:
                        # recorded below as an inaccessible device
                        logger.opt(exception=e).debug(f"{ip}: fetch raised")
                        self.log(LogLevel.ERROR, f"{ip}: Device scan failed: {e}")
                        login = None
                    keep_open = login is not None and item.is_root and self._adopt_jump_host(transport)
                finally:
                    if not keep_open:
                        transport.disconnect()

            children = self._persist(item, open_ports, login, driver, info, vendor, skip_login)
            if children:
                self._update_channel(channel_id, "queueing neighbors")
            return children
        finally:
            self._end_channel(channel_id)

    def _login(self, item: WorkItem) -> Optional[_Login]:
        """Try candidates in order; the first accepted credential wins."""
        ip = item.ip
        jump_host = None if item.is_root else self.jump_host
        via = ""
        if jump_host is not None:
            via = " via jump host"
            self.log(LogLevel.INFO, f"{ip}: Connecting via jump host ({jump_host.host})")
        attempt = 0
        for credential in self.resolver.candidates_for(self.network, item.mac, is_root_device=item.is_root):
            attempt += 1
            try:
                transport = self.connector(
                    ip,
                    credential.username,
                    credential.password,
                    timeout=self.settings.connect_timeout,
                    retries=self.settings.connect_retries,
                    retry_delay=self.settings.retry_delay,
                    jump_host=jump_host,
                )
            except AuthenticationFailed:
                logger.debug(f"{ip}: {credential.username} rejected")
                if item.mac:
                    self.resolver.record_failure(item.mac, credential)
                continue
            except (ConnectTimeout, TransportError) as e:
                self.log(LogLevel.WARN, f"{ip}: SSH connection failed: {e}")
                return None
            self.log(
                LogLevel.SUCCESS, f"{ip}: SSH login{via} successful with {credential.username} ({ordinal(attempt)} try)"
            )
            return _Login(transport=transport, credential=credential, attempt=attempt)

        self.log(LogLevel.WARN, f"{ip}: SSH login{via} failed - no valid credentials (tried {attempt})")
        return None

    def _fetch(self, item: WorkItem, login: _Login) -> tuple[BaseDriver, DeviceInfo, Optional[str]]:
        settings = self.settings
        ctx = FetchContext(
            credential=login.credential,
            host=item.ip,
            log=self.log,
            command_timeout=settings.command_timeout,
            shell_timeout=settings.shell_timeout,
            web_fetch=settings.web_fetch,
            snmp_community=settings.snmp_community,
            snmp_timeout=settings.snmp_timeout,
            enable_snmp=settings.enable_snmp,
        )
        driver, info, vendor = identify_and_fetch(login.transport, ctx, lookup_vendor(item.mac, self.oui_db))
        try:
            info.ensure_complete()
        except ParseIncomplete as e:
            self.log(LogLevel.WARN, f"{item.ip}: {e}")
        self.log(LogLevel.INFO, f"{item.ip}: Detected {vendor or 'unknown vendor'} {info.model or 'device'}")
        return driver, info, vendor

    # ── jump host ─────────────────────────────────────────────────────

    def _open_ports(self, item: WorkItem) -> list[int]:
        settings = self.settings
        jump_host = self.jump_host
        if jump_host is not None and not item.is_root:
            return probe_ports_via(jump_host, item.ip, settings.management_ports, settings.port_probe_timeout)
        return self.port_probe(item.ip, settings.management_ports, settings.port_probe_timeout)

    def _adopt_jump_host(self, transport: BaseTransport) -> bool:
        """Keep the root session open for tunnelling if it forwards TCP.

        Forwarding is tested with a channel back to the root's own SSH port.
        """
        if not self.settings.jump_host or self.jump_host is not None:
            return False
        ip = transport.host
        self.log(LogLevel.INFO, f"{ip}: Testing TCP forwarding support...")
        try:
            transport.open_tunnel(ip, SSH_PORT, timeout=self.settings.port_probe_timeout).close()
        except TransportError as e:
            logger.debug(f"{ip}: {e}")
            self.log(LogLevel.WARN, f"{ip}: TCP forwarding not supported - will use direct connections only")
            return False
        self.jump_host = transport
        self.log(
            LogLevel.SUCCESS, f"{ip}: Jump host ready - TCP forwarding supported, will use for all downstream devices"
        )
        return True

    def _close_jump_host(self) -> None:
        jump_host, self.jump_host = self.jump_host, None
        if jump_host is not None:
            jump_host.disconnect()
            self.log(LogLevel.INFO, "Jump host connection closed")

    # ── persistence ───────────────────────────────────────────────────

    def _persist(
        self,
        item: WorkItem,
        open_ports: list[int],
        login: Optional[_Login],
        driver: Optional[BaseDriver],
        info: Optional[DeviceInfo],
        vendor: Optional[str],
        skip_login: bool,
    ) -> list[WorkItem]:
        ip = item.ip
        mac = (info.primary_mac() if info else None) or (item.mac.upper() if item.mac else None) or synthetic_mac(ip)
        if not self.visited.claim(mac, item):
            self.log(LogLevel.INFO, f"{ip}: Already processed (MAC: {mac})")
            return []

        vendor = vendor or lookup_vendor(mac, self.oui_db)
        snmp_info = None
        if info is None and not skip_login and self.settings.enable_snmp:
            snmp_info = self._snmp(ip)

        hostname = (info.hostname if info else None) or (snmp_info.hostname if snmp_info else None)
        if info is None:
            hostname = hostname or self._lease_hostname(mac) or self._mdns_hostname(ip)
        if info is not None:
            device_type = detect_device_type(info, vendor)
        else:
            device_type = type_from_vendor(vendor, hostname) or DeviceType.END_DEVICE

        device, created = self._upsert_device(
            mac,
            ip=ip,
            parent_interface_id=item.parent_interface_id,
            upstream_interface=item.upstream_interface,
            own_upstream_interface=info.own_upstream_interface if info else None,
            hostname=hostname,
            vendor=vendor,
            model=(info.model if info else None) or (snmp_info.description if snmp_info else None),
            serial_number=info.serial_number if info else None,
            firmware_version=info.firmware_version if info else None,
            accessible=login is not None,
            open_ports=open_ports,
            driver=driver.name if driver else None,
            device_type=device_type,
        )
        access = "accessible" if device.accessible else "not accessible (no SSH login)"
        if created:
            self.log(LogLevel.SUCCESS, f"{ip}: Added as {device.type} (MAC: {mac}, {access})")
        else:
            self.log(LogLevel.INFO, f"{ip}: Updated existing device (MAC: {mac}, {access})")

        if login is not None:
            if login.credential.is_synthetic:
                self.log(LogLevel.INFO, f"{ip}: Login with root credentials (not recorded in matched devices)")
            elif self.resolver.record_success(self.network, mac, login.credential, hostname=hostname, ip=ip):
                self.log(LogLevel.INFO, f"{ip}: Recorded credential match ({login.credential.username})")

        if item.is_root and not device.accessible:
            self.log(
                LogLevel.ERROR,
                f"{ip}: Root device is not accessible! Enable SSH on this device to discover the network topology.",
            )
            self.log(
                LogLevel.WARN,
                f"{ip}: Only this device will be shown. DHCP leases, ARP tables, and bridge hosts cannot be collected.",
            )

        if info is None:
            return []
        interfaces = self._store_interfaces(device, info, item)
        self._store_leases(info.dhcp_leases, ip)
        if not info.neighbors:
            return []
        return self._expand(device, info, interfaces, item)

    def _upsert_device(self, mac: str, device_type: DeviceType, **fields: Any) -> tuple[Device, bool]:
        """Insert or update by MAC, keeping comment, nomad, skip_login and type.

        Descriptive fields the current pass could not determine keep their
        previous value; position fields are always overwritten.
        """
        existing = self.store.get_by_mac(mac)
        created = existing is None
        if existing is None:
            device = Device(mac=mac, type=device_type.value)
        else:
            device = existing
            if not device.type:
                device.type = device_type.value
            self._check_moved(device, fields.get("ip"))

        for name in ("hostname", "vendor", "model", "serial_number", "firmware_version"):
            value = fields.pop(name)
            if value is not None or created:
                setattr(device, name, value)
        for name, value in fields.items():
            setattr(device, name, value)
        device.network_id = self.network_id
        device.last_seen_at = utcnow()
        self.store.upsert(device)
        with self._lock:
            self.device_count += 1
        return device, created

    def _check_moved(self, device: Device, ip: Optional[str]) -> None:
        previous = device.network_id
        if not previous or previous == self.network_id:
            return
        if device.nomad:
            logger.debug(f"{device.mac}: nomad device moved from network {previous}")
            return
        previous_network = self.store.get(Network, previous)
        device.previous_network_id = previous
        device.previous_network_name = previous_network.name if previous_network else None
        self.log(
            LogLevel.WARN,
            f"{ip or device.mac}: Device moved from network {device.previous_network_name or previous}",
        )

    def _store_interfaces(self, device: Device, info: DeviceInfo, item: WorkItem) -> dict[str, Interface]:
        """Replace the device's interfaces and secondary MACs."""
        self.store.delete_where(Interface, device_id=device.id)
        self.store.delete_where(DeviceMac, device_id=device.id)
        by_name: dict[str, Interface] = {}
        for iface in info.interfaces:
            if iface.name in by_name:
                continue
            record = Interface(
                device_id=device.id,
                name=iface.name,
                ip=iface.ip,
                bridge=iface.bridge,
                vlan=iface.vlan,
                poe_watts=iface.poe_watts,
                poe_standard=iface.poe_standard,
                comment=iface.comment,
                link_up=iface.link_up,
            )
            by_name[iface.name] = self.store.upsert(record)
            if iface.mac and iface.mac.upper() != device.mac:
                secondary = iface.mac.upper()
                if self.visited.claim(secondary, item):
                    self.store.upsert(DeviceMac(device_id=device.id, mac=secondary, interface_name=iface.name))
        return by_name

    def _store_leases(self, leases: list[DhcpLeaseInfo], ip: str) -> None:
        if not leases:
            return
        self.log(LogLevel.INFO, f"{ip}: Saving {len(leases)} DHCP leases")
        now = utcnow()
        for lease in leases:
            mac = lease.mac.upper()
            record = self.store.find_one(DhcpLease, network_id=self.network_id, mac=mac)
            if record is None:
                record = DhcpLease(network_id=self.network_id, mac=mac)
            record.ip = lease.ip
            record.hostname = lease.hostname
            record.comment = lease.comment
            record.last_seen_at = now
            self.store.upsert(record)

    def _expand(
        self, device: Device, info: DeviceInfo, interfaces: dict[str, Interface], item: WorkItem
    ) -> list[WorkItem]:
        """Turn reported neighbours into work items or bridge-host records."""
        ip = item.ip
        self.log(LogLevel.INFO, f"{ip}: Found {len(info.neighbors)} neighbors")
        local_upstream = info.own_upstream_interface or next(
            (i.name for i in info.interfaces if i.ip and i.ip.split("/")[0] == ip), None
        )

        children: list[WorkItem] = []
        bridge_hosts: list[NeighborInfo] = []
        for neighbor in info.neighbors:
            mac = neighbor.mac.upper()
            if neighbor.ip:
                child = WorkItem(ip=neighbor.ip, mac=mac, upstream_interface=neighbor.interface, parent_ip=ip)
                if not self.visited.claim(mac, child):
                    continue
                child.parent_interface_id = self._parent_interface(device, neighbor.interface, interfaces).id
                children.append(child)
            elif neighbor.source == NeighborSource.BRIDGE_HOST and neighbor.interface != local_upstream:
                if self.visited.claim(mac, neighbor):
                    bridge_hosts.append(neighbor)

        for neighbor in bridge_hosts:
            self._record_passive(
                mac=neighbor.mac.upper(),
                ip=None,
                parent_interface_id=self._parent_interface(device, neighbor.interface, interfaces).id,
                upstream_interface=neighbor.interface,
                owner=neighbor,
                log_prefix=ip,
                bridge_host=True,
            )
        if children:
            self.log(LogLevel.INFO, f"{ip}: Queued {len(children)} neighbors ({self.settings.workers} concurrent)")
        return children

    def _parent_interface(self, device: Device, name: str, interfaces: dict[str, Interface]) -> Interface:
        """The parent's interface called ``name``; created as a placeholder if unlisted."""
        iface = interfaces.get(name)
        if iface is None:
            iface = self.store.upsert(Interface(device_id=device.id, name=name))
            interfaces[name] = iface
        return iface

    def _record_passive(
        self,
        mac: str,
        ip: Optional[str],
        parent_interface_id: Optional[str],
        upstream_interface: Optional[str],
        owner: object,
        log_prefix: str,
        bridge_host: bool = False,
    ) -> Optional[Device]:
        """Record a device we cannot log into from leases, mDNS and OUI data."""
        mac = mac.upper()
        if not self.visited.claim(mac, owner):
            self.log(LogLevel.INFO, f"{log_prefix}: Already processed (MAC: {mac})")
            return None

        lease = self.store.find_one(DhcpLease, network_id=self.network_id, mac=mac)
        if ip is None and lease is not None:
            ip = lease.ip
        hostname = lease.hostname if lease else None
        if not hostname and ip:
            hostname = self._mdns_hostname(ip)
            if hostname:
                self.log(LogLevel.INFO, f"{log_prefix}: Using mDNS hostname: {hostname}")
        vendor = lookup_vendor(mac, self.oui_db)
        device_type = type_from_vendor(vendor, hostname) or DeviceType.END_DEVICE

        device, created = self._upsert_device(
            mac,
            ip=ip,
            parent_interface_id=parent_interface_id,
            upstream_interface=upstream_interface,
            own_upstream_interface=None,
            hostname=hostname,
            vendor=vendor,
            model=None,
            serial_number=None,
            firmware_version=None,
            accessible=False,
            open_ports=[],
            driver=None,
            device_type=device_type,
        )
        label = f"bridge host as {device.type} on {upstream_interface}" if bridge_host else f"{device.type}"
        detail = f"MAC: {mac}" + (f", hostname: {hostname}" if hostname else "")
        if created:
            self.log(LogLevel.SUCCESS, f"{log_prefix}: Added {label} ({detail})")
        else:
            self.log(LogLevel.INFO, f"{log_prefix}: Updated {label} ({detail})")
        return device

    # ── enrichment lookups ────────────────────────────────────────────

    def _lease_hostname(self, mac: str) -> Optional[str]:
        lease = self.store.find_one(DhcpLease, network_id=self.network_id, mac=mac.upper())
        return lease.hostname if lease else None

    def _mdns_hostname(self, ip: Optional[str]) -> Optional[str]:
        device = self.mdns.get(ip) if ip else None
        return device.hostname if device and device.hostname else None

    def _snmp(self, ip: str) -> Optional[SnmpDeviceInfo]:
        with self._lock:
            if ip in self._snmp_cache:
                return self._snmp_cache[ip]
        info = self.snmp_query(ip, self.settings.snmp_community, self.settings.snmp_timeout)
        with self._lock:
            self._snmp_cache[ip] = info
        if info:
            description = (info.description or "")[:50]
            self.log(LogLevel.INFO, f"{ip}: SNMP found hostname={info.hostname}, model={description}")
        return info


class ScanManager:
    """Process-wide entry point: at most one running crawl per network."""

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        bus: Optional[EventBus] = None,
        settings: Optional[CrawlSettings] = None,
        cache: Optional[CredentialCache] = None,
        connector: Connector = open_session,
        port_probe: PortProbe = probe_ports,
        mdns_scan: MdnsScan = scan_mdns,
        snmp_query: SnmpQuery = query_system,
        oui_loader: OuiLoader = load_oui_db,
    ):
        self.store = store if store is not None else MemoryStore()
        self.bus = bus if bus is not None else EventBus()
        self.settings = settings if settings is not None else CrawlSettings()
        self.cache = cache if cache is not None else CredentialCache(self.store, ttl_days=self.settings.cache_ttl_days)
        self.resolver = CredentialResolver(self.cache)
        self.connector = connector
        self.port_probe = port_probe
        self.mdns_scan = mdns_scan
        self.snmp_query = snmp_query
        self.oui_loader = oui_loader
        self._lock = threading.Lock()
        self._crawls: dict[str, Crawl] = {}
        self._oui_lock = threading.Lock()
        self._oui_db: Optional[dict[str, str]] = None

    def oui_db(self) -> dict[str, str]:
        """The OUI registry, loaded on first use."""
        with self._oui_lock:
            if self._oui_db is None:
                self._oui_db = self.oui_loader()
            return self._oui_db

    def _network(self, network_id: str) -> Network:
        network = self.store.get(Network, network_id)
        if network is None:
            raise NotFound(f"Network {network_id} not found")
        return network

    def _new_crawl(self, network: Network, settings: Optional[CrawlSettings]) -> Crawl:
        return Crawl(
            network,
            self.store,
            self.bus,
            self.resolver,
            settings or self.settings,
            connector=self.connector,
            port_probe=self.port_probe,
            mdns_scan=self.mdns_scan,
            snmp_query=self.snmp_query,
            oui_loader=self.oui_db,
        )

    def start_scan(self, network_id: str, settings: Optional[CrawlSettings] = None) -> Scan:
        """Start a crawl in the background.

        Raises:
            ScanAlreadyRunning: A crawl of this network is in progress.
            NotFound: The network does not exist.
        """
        with self._lock:
            current = self._crawls.get(network_id)
            if current is not None and current.is_running:
                raise ScanAlreadyRunning(network_id)
            crawl = self._new_crawl(self._network(network_id), settings)
            scan = crawl.begin()
            self._crawls[network_id] = crawl
        thread = threading.Thread(target=crawl.run, name=f"scan-{network_id[:8]}", daemon=True)
        thread.start()
        logger.info(f"Scan {scan.id} of network {network_id} started")
        return scan

    def run_scan(self, network_id: str, settings: Optional[CrawlSettings] = None) -> Scan:
        """Start a crawl and block until it ends."""
        self.start_scan(network_id, settings)
        return self.wait(network_id)  # type: ignore[return-value]

    def wait(self, network_id: str, timeout: Optional[float] = None) -> Optional[Scan]:
        crawl = self._crawls.get(network_id)
        if crawl is None:
            return None
        crawl.wait(timeout)
        return crawl.scan

    def stop_scan(self, network_id: str) -> bool:
        """Request a running crawl to stop. False if none is running."""
        crawl = self._crawls.get(network_id)
        if crawl is None or not crawl.is_running:
            return False
        crawl.stop()
        logger.info(f"Stop requested for scan {crawl.scan.id}")
        return True

    def is_running(self, network_id: str) -> bool:
        crawl = self._crawls.get(network_id)
        return crawl is not None and crawl.is_running

    def active_channels(self, network_id: str) -> list[ChannelInfo]:
        crawl = self._crawls.get(network_id)
        return crawl.channels() if crawl is not None and crawl.is_running else []

    def scan_status(self, network_id: str) -> ScanStatusReport:
        """Status of the live crawl, or of the last stored scan.

        A stored scan still marked running without a live crawl was
        interrupted (e.g. by a restart) and is marked failed.
        """
        crawl = self._crawls.get(network_id)
        if crawl is not None:
            scan = crawl.scan
            return ScanStatusReport(
                network_id=network_id,
                status=scan.status,
                scan_id=scan.id,
                log_count=crawl.log_count,
                device_count=crawl.device_count,
                started_at=scan.started_at,
                completed_at=scan.completed_at,
                error=scan.error,
            )

        history = self.scan_history(network_id, limit=1)
        if not history:
            return ScanStatusReport(network_id=network_id)
        scan = history[0]
        if scan.status == ScanStatus.RUNNING:
            scan.status = ScanStatus.FAILED
            scan.completed_at = utcnow()
            scan.error = "interrupted"
            self.store.upsert(scan)
            logger.warning(f"Scan {scan.id} of network {network_id} was interrupted")
        return ScanStatusReport(
            network_id=network_id,
            status=scan.status,
            scan_id=scan.id,
            log_count=len(self.store.list(ScanLog, scan_id=scan.id)),
            device_count=scan.device_count,
            started_at=scan.started_at,
            completed_at=scan.completed_at,
            error=scan.error,
        )

    def scan_history(self, network_id: str, limit: int = 20) -> list[Scan]:
        scans = self.store.list_by_network(Scan, network_id)
        return sorted(scans, key=lambda s: s.started_at, reverse=True)[:limit]

    def scan_logs(self, scan_id: str, after: int = 0) -> list[ScanLog]:
        """Log lines of ``scan_id`` with ``seq`` greater than ``after``, in order."""
        logs = [entry for entry in self.store.list(ScanLog, scan_id=scan_id) if entry.seq > after]
        return sorted(logs, key=lambda entry: entry.seq)

    def get_topology(self, network_id: str) -> TopologyResponse:
        return build_topology(self.store, network_id)

    def test_credential(self, network_id: str, ip: str, username: str, password: str) -> CredentialTestResult:
        """Try one credential against one device.

        On success the credential is saved (network-scoped) if no stored
        credential has the same username and password, the positive cache is
        updated, and a known device at ``ip`` is marked accessible.
        """
        network = self._network(network_id)
        settings = self.settings
        known = self.store.find_one(Device, ip=ip)
        credential = self._find_or_new_credential(network, username, password)

        try:
            transport = self.connector(
                ip,
                username,
                password,
                timeout=settings.connect_timeout,
                retries=settings.connect_retries,
                retry_delay=settings.retry_delay,
            )
        except AuthenticationFailed as e:
            if known is not None and self.store.get(Credential, credential.id) is not None:
                self.resolver.record_failure(known.mac, credential)
            return CredentialTestResult(success=False, ip=ip, error=str(e))
        except (ConnectTimeout, TransportError) as e:
            return CredentialTestResult(success=False, ip=ip, error=str(e))

        ctx = FetchContext(
            credential=credential,
            host=ip,
            command_timeout=settings.command_timeout,
            shell_timeout=settings.shell_timeout,
            web_fetch=settings.web_fetch,
            enable_snmp=False,
        )
        vendor_hint = lookup_vendor(known.mac, self.oui_db()) if known else None
        try:
            driver, info, vendor = identify_and_fetch(transport, ctx, vendor_hint)
        except Exception as e:
            logger.opt(exception=e).warning(f"{ip}: logged in as {username} but reading the device failed: {e}")
            return CredentialTestResult(success=False, ip=ip, error=str(e) or type(e).__name__)
        finally:
            transport.disconnect()

        mac = info.primary_mac() or (known.mac if known else None)
        if self.store.get(Credential, credential.id) is None:
            self.store.upsert(credential)
            logger.info(f"Saved credential {username} for network {network.name}")
        if mac:
            self.resolver.record_success(network, mac, credential, hostname=info.hostname, ip=ip)
            device = self.store.get_by_mac(mac)
            if device is not None:
                device.accessible = True
                device.driver = driver.name
                device.hostname = info.hostname or device.hostname
                device.vendor = vendor or device.vendor
                device.model = info.model or device.model
                device.serial_number = info.serial_number or device.serial_number
                device.firmware_version = info.firmware_version or device.firmware_version
                device.last_seen_at = utcnow()
                self.store.upsert(device)
        return CredentialTestResult(
            success=True,
            ip=ip,
            mac=mac,
            hostname=info.hostname,
            driver=driver.name,
            credential_id=credential.id,
        )

    def _find_or_new_credential(self, network: Network, username: str, password: str) -> Credential:
        for credential in self.store.list(Credential):
            if credential.username != username or credential.password != password:
                continue
            if credential.network_id in (None, network.id):
                return credential
        return Credential(username=username, password=password, network_id=network.id)
