# src/valnet/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single invocation
    role: str         # bootstrap-validator/validator/blockstreamer/sanity
    host: Optional[str]  # entrypoint address

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(role: str, host: Optional[str], run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "role": role,
        "host": host,
    }


# ---------------------------------------------------------------------
# Provisioning & genesis
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class KeypairsProvisioned(BaseEvent):
    names: List[str]
    generated: List[str]

@dataclass(frozen=True)
class GenesisBuilt(BaseEvent):
    shred_version: int
    bank_hash: Optional[str] = None

@dataclass(frozen=True)
class GenesisFailed(BaseEvent):
    error: str


# ---------------------------------------------------------------------
# Launcher lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class NodeLaunched(BaseEvent):
    pid: int
    log_path: str

@dataclass(frozen=True)
class NodeInitWaitStarted(BaseEvent):
    marker: str
    timeout_s: int

@dataclass(frozen=True)
class NodeInitCompleted(BaseEvent):
    waited_s: int

@dataclass(frozen=True)
class NodeInitTimedOut(BaseEvent):
    timeout_s: int


# ---------------------------------------------------------------------
# Join lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ArtifactSynced(BaseEvent):
    remote: str
    local: str
    attempts: int

@dataclass(frozen=True)
class ArtifactSyncFailed(BaseEvent):
    remote: str
    error: str

@dataclass(frozen=True)
class CatchupStarted(BaseEvent):
    rpc_url: str

@dataclass(frozen=True)
class CatchupCompleted(BaseEvent):
    slot: int

@dataclass(frozen=True)
class StakeDelegated(BaseEvent):
    lamports: Optional[int]

@dataclass(frozen=True)
class StakeDelegationSkipped(BaseEvent):
    reason: str

@dataclass(frozen=True)
class JoinSummary(BaseEvent):
    status: str          # "OK" or "FAILED"
    error: Optional[str] = None


# ---------------------------------------------------------------------
# Sanity checks
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class SanityStepPassed(BaseEvent):
    step: str
    message: str

@dataclass(frozen=True)
class SanityStepFailed(BaseEvent):
    step: str
    error: str

@dataclass(frozen=True)
class SanityStepSkipped(BaseEvent):
    step: str
    reason: str

@dataclass(frozen=True)
class SanitySummary(BaseEvent):
    passed: int
    failed: int
    skipped: int
