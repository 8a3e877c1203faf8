from __future__ import annotations

import hashlib


def sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def device_record_id(user_sub: str, device: str) -> str:
    return "td_" + sha256_str(f"{user_sub}:{device}")[:24]
