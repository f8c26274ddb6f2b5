"""Credential ordering with positive and negative caches.

The resolver only orders and filters; trying candidates is the caller's job.
Both caches live in the record store (``MatchedDevice`` and
``FailedCredential``) and are only ever mutated through ``CredentialCache``,
which serialises writers with one lock.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from loguru import logger

from topomapper.models import Credential, FailedCredential, MatchedDevice, Network, utcnow
from topomapper.store import RecordStore

DEFAULT_SERVICE = "ssh"
DEFAULT_TTL_DAYS = 30
SYNTHETIC_MAC_PREFIX = "UNKNOWN-"
ROOT_CREDENTIAL_PREFIX = "root:"


def is_cacheable_mac(mac: Optional[str]) -> bool:
    return bool(mac) and not mac.upper().startswith(SYNTHETIC_MAC_PREFIX)  # type: ignore[union-attr]


class CredentialCache:
    """Single-writer access to the positive and negative credential caches."""

    def __init__(
        self,
        store: RecordStore,
        ttl_days: int = DEFAULT_TTL_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ttl = timedelta(days=ttl_days)
        self.clock = clock
        self._lock = threading.Lock()

    # ── reads ─────────────────────────────────────────────────────────

    def fresh_match(self, mac: str, service: str = DEFAULT_SERVICE) -> Optional[MatchedDevice]:
        """Most recent positive match for ``mac`` younger than the TTL."""
        cutoff = self.clock() - self.ttl
        matches = [
            m for m in self.store.list(MatchedDevice, mac=mac.upper(), service=service) if m.matched_at > cutoff
        ]
        return max(matches, key=lambda m: m.matched_at) if matches else None

    def failure(self, mac: str, credential_id: str, service: str = DEFAULT_SERVICE) -> Optional[FailedCredential]:
        return self.store.find_one(FailedCredential, mac=mac.upper(), credential_id=credential_id, service=service)

    def failure_count(self) -> int:
        return len(self.store.list(FailedCredential))

    # ── writes ────────────────────────────────────────────────────────

    def record_success(
        self,
        network_id: Optional[str],
        mac: str,
        credential: Credential,
        service: str = DEFAULT_SERVICE,
        hostname: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> Optional[MatchedDevice]:
        """Upsert the positive match and clear negative entries for the pair."""
        if not is_cacheable_mac(mac) or credential.is_synthetic:
            return None
        mac = mac.upper()
        with self._lock:
            self.store.delete_where(MatchedDevice, mac=mac, service=service)
            match = self.store.upsert(
                MatchedDevice(
                    credential_id=credential.id,
                    network_id=network_id,
                    mac=mac,
                    service=service,
                    hostname=hostname,
                    ip=ip,
                    matched_at=self.clock(),
                )
            )
            self.store.delete_where(FailedCredential, credential_id=credential.id, mac=mac, service=service)
            stored = self.store.get(Credential, credential.id)
            if stored is not None and mac not in stored.matched_devices:
                stored.matched_devices.append(mac)
                self.store.upsert(stored)
        logger.debug(f"{mac}: credential {credential.username} matched")
        return match

    def record_failure(
        self, mac: str, credential: Credential, service: str = DEFAULT_SERVICE
    ) -> Optional[FailedCredential]:
        """Upsert the negative entry and drop a positive match for the pair."""
        if not is_cacheable_mac(mac) or credential.is_synthetic:
            return None
        mac = mac.upper()
        with self._lock:
            failed = self.store.find_one(FailedCredential, credential_id=credential.id, mac=mac, service=service)
            if failed is None:
                failed = FailedCredential(credential_id=credential.id, mac=mac, service=service)
            failed.failed_at = self.clock()
            self.store.upsert(failed)
            self.store.delete_where(MatchedDevice, credential_id=credential.id, mac=mac, service=service)
        logger.debug(f"{mac}: credential {credential.username} rejected")
        return failed


class CredentialResolver:
    """Orders credential candidates for one device.

    Order: a fresh positive match alone; otherwise the network's root
    credential, other network-scoped credentials, then global ones, each in
    insertion order. Credentials that already failed on the device are
    skipped unless they were changed after the failure.
    """

    def __init__(self, cache: CredentialCache):
        self.cache = cache
        self.store = cache.store

    def root_credential(self, network: Network) -> Optional[Credential]:
        """The network's root credential; synthesised from its own fields when unset."""
        if network.root_credential_id:
            credential = self.store.get(Credential, network.root_credential_id)
            if credential is not None:
                return credential
            logger.warning(f"Root credential {network.root_credential_id} of {network.name} not found")
        if network.root_username:
            return Credential(
                id=f"{ROOT_CREDENTIAL_PREFIX}{network.id}",
                username=network.root_username,
                password=network.root_password,
                network_id=network.id,
            )
        return None

    def ordered(self, network: Network) -> list[Credential]:
        """All candidates for ``network`` before cache filtering."""
        root = self.root_credential(network)
        everything = self.store.list(Credential)
        scoped = [c for c in everything if c.network_id == network.id and (root is None or c.id != root.id)]
        global_ = [c for c in everything if c.network_id is None and (root is None or c.id != root.id)]
        return ([root] if root else []) + scoped + global_

    def _is_filtered(self, mac: str, credential: Credential, protected_id: Optional[str]) -> bool:
        if credential.id == protected_id:
            return False
        failed = self.cache.failure(mac, credential.id)
        return failed is not None and failed.failed_at >= credential.updated_at

    def candidates_for(
        self,
        network: Network,
        mac: Optional[str] = None,
        service: str = DEFAULT_SERVICE,
        is_root_device: bool = False,
    ) -> Iterator[Credential]:
        """Lazily yield credentials to try against the device with ``mac``.

        Each call returns a fresh iterator. Cache state is re-read as the
        iterator advances, so a failure recorded for the positively matched
        credential makes the normal ordering resume without repeating it.
        """
        ordered = self.ordered(network)
        protected_id = ordered[0].id if is_root_device and ordered else None
        cacheable = is_cacheable_mac(mac)
        yielded: set[str] = set()

        if cacheable:
            assert mac is not None
            match = self.cache.fresh_match(mac, service)
            matched = self.store.get(Credential, match.credential_id) if match else None
            if matched is not None:
                yield matched
                yielded.add(matched.id)
                if self.cache.fresh_match(mac, service) is not None:
                    return

        for credential in ordered:
            if credential.id in yielded:
                continue
            if cacheable and self._is_filtered(mac, credential, protected_id):  # type: ignore[arg-type]
                logger.debug(f"{mac}: skipping known-bad credential {credential.username}")
                continue
            yielded.add(credential.id)
            yield credential

    def record_success(
        self,
        network: Network,
        mac: str,
        credential: Credential,
        service: str = DEFAULT_SERVICE,
        hostname: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> Optional[MatchedDevice]:
        return self.cache.record_success(network.id, mac, credential, service=service, hostname=hostname, ip=ip)

    def record_failure(
        self, mac: str, credential: Credential, service: str = DEFAULT_SERVICE
    ) -> Optional[FailedCredential]:
        return self.cache.record_failure(mac, credential, service=service)
