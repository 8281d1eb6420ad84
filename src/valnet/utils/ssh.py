# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/utils/ssh.py

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import paramiko


@dataclass
class RemoteHost:
    """
    The entrypoint (bootstrap) machine a joining node pulls artifacts from.
    """
    address: str
    username: Optional[str] = None
    port: int = 22
    pkey_path: Optional[Path] = None


def open_ssh(
    host: RemoteHost,
    *,
    connect_timeout: float = 20.0,
) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    pkey = None
    if host.pkey_path:
        for key_cls in (
            paramiko.Ed25519Key,
            paramiko.RSAKey,
            paramiko.ECDSAKey,
        ):
            try:
                pkey = key_cls.from_private_key_file(str(host.pkey_path))
                break
            except paramiko.SSHException:
                continue

    client.connect(
        hostname=host.address,
        port=host.port,
        username=host.username,
        pkey=pkey,
        timeout=connect_timeout,
        allow_agent=True,
        look_for_keys=True,
    )

    return client
