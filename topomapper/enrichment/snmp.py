"""SNMP v2c queries: system identity for enrichment, bridge tables for 3Com switches."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from loguru import logger
from pysnmp.hlapi.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    bulk_walk_cmd,
    get_cmd,
)

from topomapper.models import InterfaceInfo, NeighborInfo, NeighborSource, SnmpDeviceInfo

DEFAULT_COMMUNITY = "public"
DEFAULT_TIMEOUT = 3.0
SNMP_PORT = 161

_OID_SYS_DESCR = "1.3.6.1.2.1.1.1.0"
_OID_SYS_CONTACT = "1.3.6.1.2.1.1.4.0"
_OID_SYS_NAME = "1.3.6.1.2.1.1.5.0"
_OID_SYS_LOCATION = "1.3.6.1.2.1.1.6.0"

_OID_IF_DESCR = "1.3.6.1.2.1.2.2.1.2"
_OID_IF_TYPE = "1.3.6.1.2.1.2.2.1.3"
_OID_IF_PHYS_ADDRESS = "1.3.6.1.2.1.2.2.1.6"
_OID_IF_OPER_STATUS = "1.3.6.1.2.1.2.2.1.8"
_OID_DOT1D_TP_FDB_PORT = "1.3.6.1.2.1.17.4.3.1.2"
_OID_DOT1D_BASE_PORT_IF_INDEX = "1.3.6.1.2.1.17.1.4.1.2"

IF_TYPE_ETHERNET = 6
OPER_UP, OPER_DOWN = 1, 2


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _format_mac(octets: Any) -> Optional[str]:
    raw = bytes(octets)
    if len(raw) != 6:
        return None
    return ":".join(f"{b:02X}" for b in raw)


async def _get_scalars(engine: Any, auth: Any, target: Any, *oids: str, host: str = "") -> list[Any]:
    """GET one or more scalar OIDs; ``None`` for each on error."""
    error_indication, error_status, _, var_binds = await get_cmd(
        engine,
        auth,
        target,
        ContextData(),
        *[ObjectType(ObjectIdentity(oid)) for oid in oids],
    )
    if error_indication or error_status:
        logger.debug(f"SNMP GET [{host}]: {error_indication or error_status.prettyPrint()}")
        return [None] * len(oids)
    return [val for _, val in var_binds]


async def _walk_table(
    engine: Any, auth: Any, target: Any, oid: str, index_len: int = 1, host: str = ""
) -> list[tuple[Any, Any]]:
    """Bulk-walk an OID subtree into ``(index, value)`` rows.

    ``index_len`` > 1 returns the trailing sub-identifiers as a tuple.
    """
    rows = []
    async for error_indication, error_status, _, var_binds in bulk_walk_cmd(
        engine,
        auth,
        target,
        ContextData(),
        0,
        25,
        ObjectType(ObjectIdentity(oid)),
        lexicographicMode=False,
    ):
        if error_indication or error_status:
            logger.debug(f"SNMP walk [{host}] {oid}: {error_indication or error_status.prettyPrint()}")
            break
        for var_bind_oid, val in var_binds:
            idx: Any
            if index_len == 1:
                idx = int(var_bind_oid[-1])
            else:
                idx = tuple(int(var_bind_oid[-i]) for i in range(index_len, 0, -1))
            rows.append((idx, val))
    return rows


async def _query_system(host: str, community: str, timeout: float) -> Optional[SnmpDeviceInfo]:
    engine = SnmpEngine()
    try:
        target = await UdpTransportTarget.create((host, SNMP_PORT), timeout=timeout, retries=0)
        name, descr, location, contact = await _get_scalars(
            engine,
            CommunityData(community, mpModel=1),
            target,
            _OID_SYS_NAME,
            _OID_SYS_DESCR,
            _OID_SYS_LOCATION,
            _OID_SYS_CONTACT,
            host=host,
        )
    finally:
        engine.close_dispatcher()
    if name is None and descr is None:
        return None
    return SnmpDeviceInfo(hostname=_text(name), description=_text(descr), location=_text(location), contact=_text(contact))


def query_system(
    host: str, community: str = DEFAULT_COMMUNITY, timeout: float = DEFAULT_TIMEOUT
) -> Optional[SnmpDeviceInfo]:
    """sysName/sysDescr/sysLocation/sysContact of ``host``, or None when it does not answer."""
    try:
        return asyncio.run(_query_system(host, community, timeout))
    except Exception as e:
        logger.debug(f"SNMP query failed for {host}: {e}")
        return None


async def _query_bridge(host: str, community: str, timeout: float) -> tuple[list[InterfaceInfo], list[NeighborInfo]]:
    engine = SnmpEngine()
    auth = CommunityData(community, mpModel=1)
    try:
        target = await UdpTransportTarget.create((host, SNMP_PORT), timeout=timeout, retries=0)
        descrs = dict(await _walk_table(engine, auth, target, _OID_IF_DESCR, host=host))
        types = dict(await _walk_table(engine, auth, target, _OID_IF_TYPE, host=host))
        phys = dict(await _walk_table(engine, auth, target, _OID_IF_PHYS_ADDRESS, host=host))
        oper = dict(await _walk_table(engine, auth, target, _OID_IF_OPER_STATUS, host=host))
        bp_to_if = {
            int(bp): int(if_idx)
            for bp, if_idx in await _walk_table(engine, auth, target, _OID_DOT1D_BASE_PORT_IF_INDEX, host=host)
        }
        fdb = await _walk_table(engine, auth, target, _OID_DOT1D_TP_FDB_PORT, index_len=6, host=host)
    finally:
        engine.close_dispatcher()

    names = {idx: str(descr).strip() for idx, descr in descrs.items()}
    interfaces = []
    for idx, name in names.items():
        if int(types.get(idx, 0)) != IF_TYPE_ETHERNET and "Ethernet" not in name:
            continue
        status = int(oper[idx]) if idx in oper else None
        interfaces.append(
            InterfaceInfo(
                name=name,
                mac=_format_mac(phys[idx].asOctets()) if idx in phys else None,
                link_up=True if status == OPER_UP else False if status == OPER_DOWN else None,
            )
        )

    neighbors = []
    for idx, port in fdb:
        bridge_port = int(port)
        if bridge_port == 0:
            continue
        if_index = bp_to_if.get(bridge_port, bridge_port)
        neighbors.append(
            NeighborInfo(
                mac=":".join(f"{o:02X}" for o in idx),
                interface=names.get(if_index, f"port{if_index}"),
                source=NeighborSource.BRIDGE_HOST,
            )
        )
    return interfaces, neighbors


def query_bridge(
    host: str, community: str = DEFAULT_COMMUNITY, timeout: float = DEFAULT_TIMEOUT
) -> tuple[list[InterfaceInfo], list[NeighborInfo]]:
    """Ethernet interfaces (IF-MIB) and learned MACs (BRIDGE-MIB) of a switch."""
    try:
        return asyncio.run(_query_bridge(host, community, timeout))
    except Exception as e:
        logger.warning(f"SNMP bridge query failed for {host}: {e}")
        return [], []
