# HAP service and characteristic type tables, plus value coercion for raw
# characteristic values. Bridges report types as full UUIDs; short forms
# ("25", "0x25") are accepted too.
import math
from typing import Any, Dict, Optional

HAP_BASE_UUID_SUFFIX = "-0000-1000-8000-0026BB765291"

def hap_uuid(short: str) -> str:
    return f"{short.upper():0>8}{HAP_BASE_UUID_SUFFIX}"

SERVICE_ACCESSORY_INFORMATION = hap_uuid("3E")

# entity kind -> HAP service type
KIND_SERVICES: Dict[str, str] = {
    "switch": hap_uuid("49"),
    "light": hap_uuid("43"),
    "outlet": hap_uuid("47"),
}

CHAR_NAME = hap_uuid("23")
CHAR_ON = hap_uuid("25")
CHAR_BRIGHTNESS = hap_uuid("8")

PERM_PAIRED_WRITE = "pw"
HAP_STATUS_SUCCESS = 0

# group words accepted wherever a target query is taken
GROUP_KINDS: Dict[str, Optional[str]] = {
    "lights": "light",
    "all lights": "light",
    "switches": "switch",
    "all switches": "switch",
    "outlets": "outlet",
    "all outlets": "outlet",
    "all": None,
}

def normalize_type(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        return ""
    raw = value.strip().upper()
    if "-" in raw:
        return raw
    if raw.startswith("0X"):
        raw = raw[2:]
    return hap_uuid(raw)

def as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in ("true", "on", "1")
    return False

def as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            return as_number(float(value))
        except ValueError:
            return None
    return None

def as_string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None

def clamp_brightness(value: float) -> int:
    if not math.isfinite(value):
        raise ValueError(f"brightness must be a finite number, got {value!r}")
    # halves round up, as HAP controllers send them
    return max(0, min(100, math.floor(value + 0.5)))
