#!/usr/bin/env python3
# src/leader.py
"""
Lease-based leader election so that only one operator replica reconciles.
"""

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from kubernetes import client
from kubernetes.client import V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.rest import ApiException

import metrics
from workqueue import calculate_exponential_backoff, calculate_jittered_sleep

logger = logging.getLogger("plumber-operator.leader")


def parse_k8s_time(time_val) -> datetime:
    """Parse Kubernetes timestamp (str or datetime) to timezone-aware datetime (UTC)."""
    if not time_val:
        return datetime.now(timezone.utc)
    if isinstance(time_val, datetime):
        return time_val if time_val.tzinfo else time_val.replace(tzinfo=timezone.utc)

    time_str = str(time_val)
    for fmt in (
        "%Y-%m-%dT%H:%M:%S.%fZ",
        "%Y-%m-%dT%H:%M:%SZ",
        "%Y-%m-%dT%H:%M:%S.%f%z",
        "%Y-%m-%dT%H:%M:%S%z",
    ):
        try:
            parsed = datetime.strptime(time_str, fmt)
        except ValueError:
            continue
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    logger.warning(f"Could not parse timestamp: {time_str}")
    return datetime.now(timezone.utc)


class LeaderElector:
    """Acquires and renews a coordination.k8s.io Lease."""

    def __init__(
        self,
        coord_api: client.CoordinationV1Api,
        lease_name: str,
        namespace: str,
        identity: str,
        lease_duration: int = 15,
        max_retries: int = 3,
    ):
        self.api = coord_api
        self.lease_name = lease_name
        self.namespace = namespace
        self.identity = identity
        self.lease_duration = lease_duration
        self.max_retries = max_retries
        self.is_leader = False

    def get_lease(self) -> Optional[V1Lease]:
        """Get current lease object or None if not found."""
        try:
            return self.api.read_namespaced_lease(self.lease_name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            logger.error(f"Error reading lease: {e}")
            raise

    def create_lease(self) -> Optional[V1Lease]:
        now = datetime.now(timezone.utc).isoformat()
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name),
            spec=V1LeaseSpec(
                holder_identity="",
                lease_duration_seconds=self.lease_duration,
                acquire_time=now,
                renew_time=now,
                lease_transitions=0,
            ),
        )
        try:
            created = self.api.create_namespaced_lease(namespace=self.namespace, body=lease)
            logger.info(f"Created new lease: {self.lease_name}")
            return created
        except ApiException as e:
            if e.status == 409:
                logger.info(f"Lease {self.lease_name} already exists, retrieving it")
                return self.get_lease()
            raise

    def patch_lease(self, lease: V1Lease) -> V1Lease:
        """Write the lease back; the resourceVersion it carries guards against concurrent writers."""
        return self.api.patch_namespaced_lease(
            name=self.lease_name, namespace=self.namespace, body=lease
        )

    def _set_leader(self, value: bool, reason: str = ""):
        if value != self.is_leader:
            metrics.leadership_changes_total.inc()
            if value:
                logger.info(f"Leadership acquired by {self.identity} ({reason})")
            else:
                logger.info(f"Leadership lost ({reason})")
        self.is_leader = value
        metrics.leader_status.labels(pod=self.identity).set(1 if value else 0)

    def try_acquire(self) -> bool:
        """One acquisition or renewal attempt, retried on write conflicts."""
        for attempt in range(self.max_retries):
            try:
                lease = self.get_lease() or self.create_lease()
                if lease is None:
                    logger.warning("Could not get lease even after creation attempt")
                    return False

                now = datetime.now(timezone.utc)
                holder = lease.spec.holder_identity or ""
                duration = int(lease.spec.lease_duration_seconds or self.lease_duration)
                renew_time = lease.spec.renew_time
                expired = True
                if renew_time:
                    expired = parse_k8s_time(renew_time) + timedelta(seconds=duration) < now

                if holder and holder != self.identity and not expired:
                    self._set_leader(False, f"held by {holder}")
                    return False

                lease.spec.holder_identity = self.identity
                lease.spec.renew_time = now.isoformat()
                if holder != self.identity:
                    lease.spec.acquire_time = now.isoformat()
                    if holder:
                        lease.spec.lease_transitions = (lease.spec.lease_transitions or 0) + 1

                updated = self.patch_lease(lease)
                if updated.spec.holder_identity != self.identity:
                    logger.warning(
                        f"Lease patch succeeded but holder is {updated.spec.holder_identity}, not {self.identity}"
                    )
                    self._set_leader(False, "lease overwritten")
                    return False

                self._set_leader(True, f"previous: {holder or 'vacant'}")
                return True

            except ApiException as e:
                if e.status != 409:
                    logger.error(f"Unexpected error acquiring lease: {e}")
                    raise
                logger.debug(f"Lease acquisition conflict (409) - attempt {attempt + 1}/{self.max_retries}")
                if attempt < self.max_retries - 1:
                    time.sleep(calculate_exponential_backoff(attempt))

        logger.debug("Max retries reached for lease acquisition")
        return False

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ):
        """Block, renewing the lease, until ``stop_event`` is set.

        Callbacks run on the calling thread whenever leadership changes hands.
        """
        retry_period = max(1, self.lease_duration // 3)
        logger.info(f"Starting leader election for lease {self.namespace}/{self.lease_name} as {self.identity}")
        leading = False
        try:
            while not stop_event.is_set():
                try:
                    acquired = self.try_acquire()
                except Exception as e:
                    logger.error(f"Error in leader election: {e}")
                    acquired = False

                if acquired and not leading:
                    leading = True
                    on_started_leading()
                elif not acquired and leading:
                    leading = False
                    on_stopped_leading()

                stop_event.wait(calculate_jittered_sleep(retry_period))
        finally:
            if leading:
                on_stopped_leading()
                self.release()

    def release(self):
        """Give the lease up so another replica can take over without waiting for expiry."""
        try:
            lease = self.get_lease()
            if lease is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = ""
            self.patch_lease(lease)
            self._set_leader(False, "released")
        except ApiException as e:
            logger.warning(f"Failed to release lease {self.lease_name}: {e}")
