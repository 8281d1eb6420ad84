# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/rpc/client.py

from __future__ import annotations

import itertools
from typing import Any, List, Optional

import requests


class RpcError(RuntimeError):
    """The node answered, but with a JSON-RPC error or a malformed body."""


class JsonRpcClient:
    """
    Minimal JSON-RPC 2.0 client for the validator's HTTP endpoint (8899).
    Only read-only queries; nothing here signs or submits transactions.
    """

    def __init__(self, url: str, *, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._ids = itertools.count(1)

    def request(self, method: str, params: Optional[list] = None) -> dict:
        """
        POST one call and return the decoded JSON body, whatever it contains.
        Connection failures propagate as requests exceptions.
        """
        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": next(self._ids), "method": method}
        if params:
            payload["params"] = params

        r = self.session.post(
            self.url,
            json=payload,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        try:
            body = r.json()
        except ValueError as e:
            raise RpcError(f"{method}: non-JSON response ({r.status_code}) from {self.url}") from e
        if not isinstance(body, dict):
            raise RpcError(f"{method}: unexpected response {body!r}")
        return body

    def call(self, method: str, params: Optional[list] = None) -> Any:
        body = self.request(method, params)
        if "error" in body:
            err = body["error"] or {}
            raise RpcError(f"{method} failed: {err.get('code')} {err.get('message')}")
        if "result" not in body:
            raise RpcError(f"{method}: response has no result")
        return body["result"]

    def get_slot(self, commitment: Optional[str] = None) -> int:
        params = [{"commitment": commitment}] if commitment else None
        return int(self.call("getSlot", params))

    def get_transaction_count(self) -> int:
        return int(self.call("getTransactionCount"))

    def get_cluster_nodes(self) -> List[dict]:
        return list(self.call("getClusterNodes") or [])
