"""Pydantic models: persisted records, driver output, topology view and events."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field

from topomapper.exceptions import ParseIncomplete


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceType(str, Enum):
    ROUTER = "router"
    SWITCH = "switch"
    ACCESS_POINT = "access-point"
    END_DEVICE = "end-device"
    IOT = "iot"
    PRINTER = "printer"
    CAMERA = "camera"
    TV = "tv"
    PHONE = "phone"
    DESKTOP_PHONE = "desktop-phone"
    SERVER = "server"
    COMPUTER = "computer"
    TABLET = "tablet"


class ScanStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    ERROR = "error"


class NeighborSource(str, Enum):
    DHCP = "dhcp"
    ARP = "arp"
    BRIDGE_HOST = "bridge-host"
    MNDP = "mndp"
    LLDP = "lldp"


# Higher wins when two reports disagree about the same neighbour.
SOURCE_TRUST: dict[NeighborSource, int] = {
    NeighborSource.BRIDGE_HOST: 1,
    NeighborSource.ARP: 2,
    NeighborSource.DHCP: 3,
    NeighborSource.LLDP: 4,
    NeighborSource.MNDP: 4,
}


# ── persisted records ─────────────────────────────────────────────────


class Network(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    root_ip: str
    root_username: str = ""
    root_password: str = ""
    root_credential_id: Optional[str] = None
    last_scanned_at: Optional[datetime] = None
    device_count: int = 0
    is_online: Optional[bool] = None


class Device(BaseModel):
    id: str = Field(default_factory=new_id)
    mac: str
    network_id: Optional[str] = None
    parent_interface_id: Optional[str] = None
    upstream_interface: Optional[str] = None
    own_upstream_interface: Optional[str] = None
    hostname: Optional[str] = None
    ip: Optional[str] = None
    type: Optional[str] = None
    vendor: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    firmware_version: Optional[str] = None
    accessible: Optional[bool] = None
    open_ports: list[int] = Field(default_factory=list)
    driver: Optional[str] = None
    comment: Optional[str] = None
    nomad: bool = False
    skip_login: bool = False
    previous_network_id: Optional[str] = None
    previous_network_name: Optional[str] = None
    last_seen_at: datetime = Field(default_factory=utcnow)


class DeviceMac(BaseModel):
    id: str = Field(default_factory=new_id)
    device_id: str
    mac: str
    interface_name: Optional[str] = None


class Interface(BaseModel):
    id: str = Field(default_factory=new_id)
    device_id: str
    name: str
    ip: Optional[str] = None
    bridge: Optional[str] = None
    vlan: Optional[str] = None
    poe_watts: Optional[float] = None
    poe_standard: Optional[str] = None
    comment: Optional[str] = None
    link_up: Optional[bool] = None


class Credential(BaseModel):
    id: str = Field(default_factory=new_id)
    username: str
    password: str
    network_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    matched_devices: list[str] = Field(default_factory=list)

    @property
    def is_synthetic(self) -> bool:
        """Root credential built from the network's own fields, never stored."""
        return self.id.startswith("root:")


class MatchedDevice(BaseModel):
    id: str = Field(default_factory=new_id)
    credential_id: str
    network_id: Optional[str] = None
    mac: str
    service: str = "ssh"
    hostname: Optional[str] = None
    ip: Optional[str] = None
    matched_at: datetime = Field(default_factory=utcnow)


class FailedCredential(BaseModel):
    id: str = Field(default_factory=new_id)
    credential_id: str
    mac: str
    service: str = "ssh"
    failed_at: datetime = Field(default_factory=utcnow)


class Scan(BaseModel):
    id: str = Field(default_factory=new_id)
    network_id: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    status: ScanStatus = ScanStatus.RUNNING
    root_ip: str = ""
    device_count: int = 0
    error: Optional[str] = None


class ScanLog(BaseModel):
    id: str = Field(default_factory=new_id)
    scan_id: str
    seq: int
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel = LogLevel.INFO
    message: str


class DhcpLease(BaseModel):
    id: str = Field(default_factory=new_id)
    network_id: str
    mac: str
    ip: Optional[str] = None
    hostname: Optional[str] = None
    comment: Optional[str] = None
    last_seen_at: datetime = Field(default_factory=utcnow)


# ── driver output ─────────────────────────────────────────────────────


class InterfaceInfo(BaseModel):
    name: str
    mac: Optional[str] = None
    ip: Optional[str] = None
    bridge: Optional[str] = None
    vlan: Optional[str] = None
    comment: Optional[str] = None
    link_up: Optional[bool] = None
    poe_watts: Optional[float] = None
    poe_standard: Optional[str] = None


class NeighborInfo(BaseModel):
    mac: str
    ip: Optional[str] = None
    hostname: Optional[str] = None
    interface: str = "unknown"
    source: NeighborSource = NeighborSource.BRIDGE_HOST
    model: Optional[str] = None
    version: Optional[str] = None
    vlans: list[str] = Field(default_factory=list)

    @property
    def trust(self) -> int:
        return SOURCE_TRUST[self.source]


class DhcpLeaseInfo(BaseModel):
    mac: str
    ip: Optional[str] = None
    hostname: Optional[str] = None
    comment: Optional[str] = None


class DeviceInfo(BaseModel):
    hostname: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    firmware_version: Optional[str] = None
    interfaces: list[InterfaceInfo] = Field(default_factory=list)
    neighbors: list[NeighborInfo] = Field(default_factory=list)
    dhcp_leases: list[DhcpLeaseInfo] = Field(default_factory=list)
    own_upstream_interface: Optional[str] = None

    def primary_mac(self) -> Optional[str]:
        """First interface MAC reported by the device, upper-cased."""
        for iface in self.interfaces:
            if iface.mac:
                return iface.mac.upper()
        return None

    def missing_fields(self) -> list[str]:
        return [
            name
            for name in ("hostname", "model", "serial_number", "firmware_version")
            if getattr(self, name) is None
        ]

    def ensure_complete(self) -> None:
        """Raise ParseIncomplete if any descriptive field is empty."""
        missing = self.missing_fields()
        if missing:
            raise ParseIncomplete(missing)


class SnmpDeviceInfo(BaseModel):
    hostname: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    contact: Optional[str] = None


class MdnsDevice(BaseModel):
    ip: str
    hostname: str = ""
    services: list[str] = Field(default_factory=list)


# ── topology view ─────────────────────────────────────────────────────


class TopologyDevice(Device):
    mac_count: int = 1
    interfaces: list[Interface] = Field(default_factory=list)
    children: list[TopologyDevice] = Field(default_factory=list)


class TopologyNetwork(BaseModel):
    id: str
    name: str
    root_ip: str
    last_scanned_at: Optional[datetime] = None


class TopologyResponse(BaseModel):
    network: Optional[TopologyNetwork] = None
    devices: list[TopologyDevice] = Field(default_factory=list)
    total_count: int = 0


class CredentialTestResult(BaseModel):
    success: bool
    ip: str
    mac: Optional[str] = None
    hostname: Optional[str] = None
    driver: Optional[str] = None
    credential_id: Optional[str] = None
    error: Optional[str] = None


class ScanStatusReport(BaseModel):
    network_id: str
    status: ScanStatus = ScanStatus.IDLE
    scan_id: Optional[str] = None
    log_count: int = 0
    device_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


# ── progress events ───────────────────────────────────────────────────


class ChannelInfo(BaseModel):
    id: str
    ip: str
    action: str


class LogEvent(BaseModel):
    type: Literal["log"] = "log"
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel = LogLevel.INFO
    message: str


class TopologyEvent(BaseModel):
    type: Literal["topology"] = "topology"
    topology: TopologyResponse


class StatusEvent(BaseModel):
    type: Literal["status"] = "status"
    status: ScanStatus
    error: Optional[str] = None


class ChannelsEvent(BaseModel):
    type: Literal["channels"] = "channels"
    channels: list[ChannelInfo] = Field(default_factory=list)


Event = Union[LogEvent, TopologyEvent, StatusEvent, ChannelsEvent]
