"""Resolution of the tenant identity attached to every downstream call."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from ..config import TenancyConfig, TenantProfile
from ..constants import DEFAULT_SUBSCRIPTION_TIER
from ..contracts import TenantContext
from .claims import get_header

logger = logging.getLogger(__name__)


class TenantContextPropagator:
    """Build a :class:`TenantContext` from request metadata.

    Precedence: the tenant field of verified claims, then the tenant header,
    then the configured default tenant. The header is only read when no
    claims were supplied at all. Resolution never fails so the
    pipeline stays total; callers that need a real tenant check
    ``context.source``.
    """

    def __init__(
        self,
        default_tenant_id: str = "default",
        tenant_header: str = "X-Tenant-ID",
        tenant_claim: str = "tenant_id",
        directory: Optional[Dict[str, TenantProfile]] = None,
    ) -> None:
        self.default_tenant_id = default_tenant_id
        self.tenant_header = tenant_header
        self.tenant_claim = tenant_claim
        self._directory = dict(directory or {})

    @classmethod
    def from_config(cls, config: TenancyConfig) -> "TenantContextPropagator":
        return cls(
            default_tenant_id=config.default_tenant_id,
            tenant_header=config.tenant_header,
            tenant_claim=config.tenant_claim,
            directory=config.tenants,
        )

    def resolve(
        self,
        headers: Optional[Mapping[str, str]] = None,
        authenticated_claims: Optional[Mapping[str, Any]] = None,
    ) -> TenantContext:
        claims = authenticated_claims or {}
        claimed = claims.get(self.tenant_claim)
        if claimed:
            return self._build(str(claimed), "claim", claims)
        if claims:
            # an authenticated caller is bound to its claims, never to the header
            logger.warning(
                f"Authenticated claims carry no {self.tenant_claim}, ignoring tenant header"
            )
            return self._build(self.default_tenant_id, "default", {})

        header_value = get_header(headers or {}, self.tenant_header)
        if header_value and header_value.strip():
            return self._build(header_value.strip(), "header", {})

        logger.debug(f"No tenant on request, using default tenant {self.default_tenant_id}")
        return self._build(self.default_tenant_id, "default", {})

    def _build(
        self, tenant_id: str, source: str, claims: Mapping[str, Any]
    ) -> TenantContext:
        profile = self._directory.get(tenant_id)
        if profile is not None:
            return TenantContext(
                tenant_id=tenant_id,
                tenant_name=profile.name or tenant_id,
                subscription_tier=profile.subscription_tier,
                features=frozenset(profile.features),
                quotas=dict(profile.quotas),
                source=source,
            )
        return TenantContext(
            tenant_id=tenant_id,
            tenant_name=str(claims.get("tenant_name") or tenant_id),
            subscription_tier=str(
                claims.get("subscription_tier") or DEFAULT_SUBSCRIPTION_TIER
            ),
            features=frozenset(claims.get("features") or ()),
            quotas={k: int(v) for k, v in (claims.get("quotas") or {}).items()},
            source=source,
        )
