"""Shared defaults for adxflow."""

from __future__ import annotations

import uuid

DEFAULT_TENANT_ID = "default"
DEFAULT_TENANT_HEADER = "X-Tenant-ID"
DEFAULT_TENANT_CLAIM = "tenant_id"
DEFAULT_SUBSCRIPTION_TIER = "free"

DEFAULT_ACTIVITY_TIMEOUT = 30.0

# Namespace for idempotency keys handed to activities.
IDEMPOTENCY_NAMESPACE = uuid.UUID("6f1c3c52-5a3e-4f7b-9a53-3d1f0e2b8c41")

EVENT_TOPIC_PREFIX = "executions"
