"""Feature checkers.

:class:`StaticFeatureChecker` grants a fixed set of features, globally or
per tenant. It backs the ``SCHEDULER_ENABLED_FEATURES`` setting and tests;
real deployments plug in their entitlement service through the
:class:`~mercato_scheduler.protocols.FeatureChecker` protocol.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable


class StaticFeatureChecker:
    """Thread-safe in-memory feature grants.

    Example:
        >>> checker = StaticFeatureChecker(["reports.export"])
        >>> checker.grant("t-1", "billing.reminders")
        >>> await checker.has_feature("t-1", "billing.reminders")
        True
    """

    def __init__(self, features: Iterable[str] = ()) -> None:
        self._global = set(features)
        self._tenants: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    def grant(self, tenant_id: str, feature: str) -> None:
        with self._lock:
            self._tenants.setdefault(tenant_id, set()).add(feature)

    def revoke(self, tenant_id: str, feature: str) -> None:
        with self._lock:
            self._tenants.get(tenant_id, set()).discard(feature)

    async def has_feature(
        self,
        tenant_id: str,
        feature: str,
        *,
        organization_id: str | None = None,
    ) -> bool:
        with self._lock:
            return feature in self._global or feature in self._tenants.get(tenant_id, set())
