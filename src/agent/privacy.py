"""Masking of personal data in record payloads before they are buffered."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from .models import Record

_PHONE_RE = re.compile(r"^(\d{3})\d{4}(\d{4})$")
_ID_CARD_RE = re.compile(r"^(\d{6})\d{8}(\w{4})$")
_IPV4_RE = re.compile(r"^(\d+\.\d+)\.\d+\.\d+$")

_ID_CARD_KEYS = ("id_card", "idCard")
_REQUEST_BODY_KEYS = ("request_body", "requestBody")
_SECRET_KEYS = ("password", "token", "secret")
SECRET_MASK = "******"


def mask_phone(phone: str) -> str:
    """`13812345678` -> `138****5678`."""
    return _PHONE_RE.sub(r"\1****\2", phone)


def mask_id_card(id_card: str) -> str:
    """`110101199003071234` -> `110101********1234`."""
    return _ID_CARD_RE.sub(r"\1********\2", id_card)


def mask_ip(ip: str) -> str:
    """`192.168.1.20` -> `192.168.***.***`."""
    return _IPV4_RE.sub(r"\1.***.***", ip)


def _mask_request_body(body: Mapping[str, Any]) -> dict[str, Any]:
    masked = dict(body)
    for key in _SECRET_KEYS:
        if masked.get(key):
            masked[key] = SECRET_MASK
    return masked


def mask_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of `payload` with known sensitive fields masked."""
    masked = dict(payload)
    if isinstance(masked.get("phone"), str):
        masked["phone"] = mask_phone(masked["phone"])
    for key in _ID_CARD_KEYS:
        if isinstance(masked.get(key), str):
            masked[key] = mask_id_card(masked[key])
    if isinstance(masked.get("ip"), str):
        masked["ip"] = mask_ip(masked["ip"])
    for key in _REQUEST_BODY_KEYS:
        if isinstance(masked.get(key), Mapping):
            masked[key] = _mask_request_body(masked[key])
    return masked


def mask_record(record: Record) -> Record:
    """Return `record` with a masked payload; the input is never modified."""
    masked = mask_payload(record.payload)
    if masked == record.payload:
        return record
    return record.model_copy(update={"payload": masked})
