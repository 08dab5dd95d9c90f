"""Tenant identity resolution and verification."""

from __future__ import annotations

from .claims import ClaimsVerifier
from .propagator import TenantContextPropagator

__all__ = ["ClaimsVerifier", "TenantContextPropagator"]
