"""Identity enrichment for devices that cannot be logged into."""

from topomapper.enrichment.mdns import scan_mdns
from topomapper.enrichment.oui import load_oui_db, lookup_vendor, normalize_vendor_name
from topomapper.enrichment.ports import probe_ports, probe_ports_via
from topomapper.enrichment.snmp import query_bridge, query_system

__all__ = [
    "scan_mdns",
    "load_oui_db",
    "lookup_vendor",
    "normalize_vendor_name",
    "probe_ports",
    "probe_ports_via",
    "query_system",
    "query_bridge",
]
