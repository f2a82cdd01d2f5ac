"""Shared database constants for the DB package.

Status labels and classification codes are consumed by the repositories, the
pollers, the API models and the tests. Keeping them in one place prevents the
string literals from drifting apart.
"""

from __future__ import annotations

# Snapshot lifecycle. PENDING is the only non-terminal status.
STATUS_PENDING = "PENDING"
STATUS_CONFIRMED = "CONFIRMED"
STATUS_ORPHANED = "ORPHANED"
SNAPSHOT_STATUSES = (STATUS_PENDING, STATUS_CONFIRMED, STATUS_ORPHANED)

# Where a snapshot row came from.
SOURCE_WEBHOOK = "webhook"
SOURCE_POLLER = "poller"

# Fiber lifecycle as reported by the ledger.
FIBER_ACTIVE = "ACTIVE"
FIBER_ARCHIVED = "ARCHIVED"
FIBER_FAILED = "FAILED"
FIBER_STATUSES = (FIBER_ACTIVE, FIBER_ARCHIVED, FIBER_FAILED)

# Workflow types counted separately in materialization results.
AGENT_WORKFLOW_TYPE = "AgentIdentity"
CONTRACT_WORKFLOW_TYPE = "Contract"
