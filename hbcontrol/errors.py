"""Error taxonomy shared by discovery, the HAP client, the registry and the scheduler.

Guardrail denials are not errors; they are reported as ``GuardrailResult`` values.
"""
from typing import Any, Dict, List, Optional


class BridgeError(Exception):
    pass


class ConfigurationError(BridgeError):
    """Host config.json is missing, unreadable or not an object."""


class EndpointUnreachable(BridgeError):
    def __init__(self, endpoint: str, message: str):
        super().__init__(f"{endpoint}: {message}")
        self.endpoint = endpoint


class ProtocolError(BridgeError):
    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: str = "",
        failures: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.status = status
        self.body = body
        self.failures = failures or []


class EntityNotFound(BridgeError):
    def __init__(self, entity_id: str):
        super().__init__(f"Entity not found: {entity_id}")
        self.entity_id = entity_id


class UnsupportedCapability(BridgeError):
    pass


class InvalidValue(BridgeError):
    """A requested characteristic value cannot be sent to the bridge."""


class SchedulingError(BridgeError):
    def __init__(self, job_id: str, cause: BaseException):
        super().__init__(f"Job {job_id} failed: {cause}")
        self.job_id = job_id
        self.cause = cause
