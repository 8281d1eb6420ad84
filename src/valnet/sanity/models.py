# src/valnet/sanity/models.py

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import ConfigError


@dataclass(frozen=True)
class SanityOptions:
    ledger_verify: bool = True
    validator_sanity: bool = True
    reject_extra_nodes: bool = False

    @classmethod
    def from_flags(cls, flags: List[str]) -> "SanityOptions":
        """Parse ``-o`` style option names (noLedgerVerify, ...)."""
        opts = {"ledger_verify": True, "validator_sanity": True, "reject_extra_nodes": False}
        for flag in flags:
            if flag == "noLedgerVerify":
                opts["ledger_verify"] = False
            elif flag == "noValidatorSanity":
                opts["validator_sanity"] = False
            elif flag == "rejectExtraNodes":
                opts["reject_extra_nodes"] = True
            else:
                raise ConfigError(f"unknown option: {flag}")
        return cls(**opts)


@dataclass
class SanityReport:
    expected_nodes: int = 0
    peer_count_observed: int = 0
    rpc_reachable: bool = False
    ledger_verified: Optional[bool] = None
    panic_detected: bool = False
    wallet_ok: Optional[bool] = None
    installer_ok: Optional[bool] = None
    failures: List[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures and not self.timed_out

    def fail(self, step: str, message: str) -> None:
        self.failures.append(f"{step}: {message}")

    def dict(self) -> Dict[str, Any]:
        return asdict(self)
