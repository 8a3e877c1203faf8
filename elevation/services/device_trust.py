from __future__ import annotations

from typing import Any, Dict, List, Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from elevation.core.crypto import device_record_id
from elevation.core.entities import TrustedDevice
from elevation.core.settings import S
from elevation.core.tables import T
from elevation.core.time import now_ts

DAY = 24 * 3600


def _from_item(it: Dict[str, Any]) -> TrustedDevice:
    return TrustedDevice(
        record_id=it["record_id"],
        user_sub=it.get("user_sub", ""),
        device_label=it.get("device_label", ""),
        created_at=int(it.get("created_at", 0) or 0),
        last_used_at=int(it.get("last_used_at", 0) or 0),
        trusted_until=int(it.get("trusted_until", 0) or 0),
        active=bool(it.get("active", False)),
    )


def record_trust(user_sub: str, device: str, duration_days: int, label: Optional[str] = None) -> TrustedDevice:
    """Trust ``device`` for ``user_sub`` for the given number of days.

    Re-recording an already trusted device resets its window.
    """
    ts = now_ts()
    until = ts + max(0, int(duration_days)) * DAY
    item = {
        "record_id": device_record_id(user_sub, device),
        "user_sub": user_sub,
        "device_label": (label or device)[:128],
        "created_at": ts,
        "last_used_at": ts,
        "trusted_until": until,
        "active": True,
        # Let DynamoDB reap the row a day after it stops mattering.
        S.ddb_ttl_attr: until + DAY,
    }
    T.trusted_devices.put_item(Item=item)
    return _from_item(item)


def get_record(user_sub: str, device: str) -> Optional[TrustedDevice]:
    it = T.trusted_devices.get_item(Key={"record_id": device_record_id(user_sub, device)}).get("Item")
    if not it or it.get("user_sub") != user_sub:
        return None
    return _from_item(it)


def is_trusted(user_sub: str, device: str) -> bool:
    if not user_sub or not device:
        return False
    rec = get_record(user_sub, device)
    ts = now_ts()
    if rec is None or not rec.is_live(ts):
        return False
    try:
        T.trusted_devices.update_item(
            Key={"record_id": rec.record_id},
            UpdateExpression="SET last_used_at = :t",
            ExpressionAttributeValues={":t": ts},
        )
    except Exception:
        pass
    return True


def revoke(record_id: str) -> bool:
    try:
        T.trusted_devices.update_item(
            Key={"record_id": record_id},
            UpdateExpression="SET active = :f, revoked_at = :t",
            ConditionExpression="attribute_exists(record_id)",
            ExpressionAttributeValues={":f": False, ":t": now_ts()},
        )
    except ClientError as exc:
        if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
            return False
        raise
    return True


def list_devices(user_sub: str) -> List[TrustedDevice]:
    r = T.trusted_devices.query(
        IndexName=S.trusted_devices_user_index,
        KeyConditionExpression=Key("user_sub").eq(user_sub),
        Limit=200,
    )
    out = [_from_item(it) for it in r.get("Items", [])]
    out.sort(key=lambda d: d.created_at, reverse=True)
    return out


def owns(user_sub: str, record_id: str) -> bool:
    it = T.trusted_devices.get_item(Key={"record_id": record_id}).get("Item")
    return bool(it) and it.get("user_sub") == user_sub


def revoke_all(user_sub: str) -> int:
    n = 0
    for d in list_devices(user_sub):
        if d.active and revoke(d.record_id):
            n += 1
    return n


def summarize(devices: List[TrustedDevice], ts: int) -> Dict[str, int]:
    live = sum(1 for d in devices if d.is_live(ts))
    expired = sum(1 for d in devices if d.active and not d.is_live(ts))
    return {"trusted_devices_count": len(devices), "active_devices": live, "expired_devices": expired}


def usage_stats(user_sub: str) -> Dict[str, int]:
    return summarize(list_devices(user_sub), now_ts())
