"""Find the HAP endpoints of the Homebridge main bridge and its child bridges.

Ports and PINs come from ``config.json`` when set explicitly, otherwise from the
``persist/AccessoryInfo.<ID>.json`` files HAP-NodeJS writes for every bridge.
Discovery never raises: a broken config yields an empty list and a warning.
"""
import json, logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

from .errors import ConfigurationError
from .mappings import as_number, as_string

log = logging.getLogger("discovery")

DEFAULT_MAIN_PORT = 51826

@dataclass(frozen=True)
class Endpoint:
    username: str
    port: int
    pin: str
    name: str
    role: Literal["main", "child"]

    def base_url(self, host: str = "127.0.0.1") -> str:
        return f"http://{host}:{self.port}"

def normalize_identity(username: str) -> str:
    return username.replace(":", "").upper()

def load_host_config(storage_path: Path) -> Dict[str, Any]:
    config_path = Path(storage_path) / "config.json"
    try:
        parsed = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Failed to read {config_path}: {e}") from e
    if not isinstance(parsed, dict):
        raise ConfigurationError(f"{config_path} is not an object")
    return parsed

def _read_credentials(path: Path) -> Optional[Tuple[Optional[str], Optional[int]]]:
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        log.debug("Failed to read %s: %s", path, e)
        return None
    if not isinstance(parsed, dict):
        return None
    pin = as_string(parsed.get("pincode"))
    port = as_number(parsed.get("port"))
    if not pin and port is None:
        return None
    return pin, int(port) if port is not None else None

def load_credentials(storage_path: Path, username: str) -> Tuple[Optional[str], Optional[int]]:
    """Return ``(pin, port)`` for a bridge identity, ``(None, None)`` if unknown."""
    persist_dir = Path(storage_path) / "persist"
    normalized = normalize_identity(username)

    found = _read_credentials(persist_dir / f"AccessoryInfo.{normalized}.json")
    if found:
        return found

    try:
        candidates = sorted(persist_dir.glob("AccessoryInfo.*.json"))
    except OSError as e:
        log.debug("Failed to scan %s: %s", persist_dir, e)
        return None, None
    for candidate in candidates:
        if normalized not in candidate.name.upper():
            continue
        found = _read_credentials(candidate)
        if found:
            return found
    return None, None

def _child_bridges(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    out = []
    for section in ("platforms", "accessories"):
        items = config.get(section)
        if not isinstance(items, list):
            continue
        for item in items:
            if isinstance(item, dict) and isinstance(item.get("_bridge"), dict):
                out.append(item["_bridge"])
    return out

def discover_endpoints(storage_path: Path, include_child_bridges: bool = True) -> List[Endpoint]:
    try:
        config = load_host_config(storage_path)
    except ConfigurationError as e:
        log.warning("Bridge discovery skipped: %s", e)
        return []

    endpoints: List[Endpoint] = []
    main = config.get("bridge") if isinstance(config.get("bridge"), dict) else {}
    main_username = as_string(main.get("username"))
    main_name = as_string(main.get("name")) or "Homebridge"
    main_pin = None

    if main_username:
        stored_pin, stored_port = load_credentials(storage_path, main_username)
        main_pin = as_string(main.get("pin")) or stored_pin
        explicit_port = as_number(main.get("port"))
        main_port = int(explicit_port) if explicit_port is not None else stored_port or DEFAULT_MAIN_PORT
        if main_pin:
            endpoints.append(Endpoint(main_username.upper(), main_port, main_pin, main_name, "main"))

    if not endpoints:
        log.warning(
            "Main bridge username/pin not found; set bridge.username and bridge.pin "
            "in config.json (or make sure AccessoryInfo is present)"
        )

    if not include_child_bridges:
        return endpoints

    seen = {e.username for e in endpoints}
    for bridge in _child_bridges(config):
        username = as_string(bridge.get("username"))
        if not username:
            continue
        name = as_string(bridge.get("name")) or username
        stored_pin, stored_port = load_credentials(storage_path, username)
        explicit_port = as_number(bridge.get("port"))
        port = int(explicit_port) if explicit_port is not None else stored_port
        pin = as_string(bridge.get("pin")) or stored_pin or main_pin
        if not port or not pin:
            log.debug("Child bridge %s has no resolvable port/pin; skipped", username)
            continue
        upper = username.upper()
        if upper in seen:
            continue
        seen.add(upper)
        endpoints.append(Endpoint(upper, port, pin, name, "child"))
    return endpoints
