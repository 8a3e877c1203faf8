from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .aws import ddb
from .settings import S

@dataclass(frozen=True)
class Tables:
    trusted_devices: Any

T = Tables(
    trusted_devices=ddb.Table(S.ddb_trusted_devices_table),
)
