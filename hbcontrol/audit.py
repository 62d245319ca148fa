import logging, uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .db import Base
from .models import Audit

log = logging.getLogger("audit")

class AuditLog:
    """Append-only record of every entity write, scheduled job run and remediation command."""

    def __init__(self, session_factory: sessionmaker):
        self._sessions = session_factory

    def init_db(self) -> None:
        Base.metadata.create_all(self._sessions.kw["bind"])

    def record(self, actor: str, action: str, target_type: str, target_id: str,
               payload: Optional[Dict[str, Any]] = None) -> None:
        # auditing must never turn a completed write into a failure
        try:
            with self._sessions() as s:
                s.add(Audit(id=str(uuid.uuid4()), actor=actor, action=action,
                            target_type=target_type, target_id=target_id, payload=payload or {}))
                s.commit()
        except SQLAlchemyError as e:
            log.warning("Failed to write audit record for %s %s: %s", action, target_id, e)

    def recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._sessions() as s:
            rows = s.scalars(select(Audit).order_by(Audit.ts.desc()).limit(limit)).all()
            return [
                {
                    "id": a.id,
                    "ts": a.ts.isoformat() if a.ts else None,
                    "actor": a.actor,
                    "action": a.action,
                    "target_type": a.target_type,
                    "target_id": a.target_id,
                    "payload": a.payload,
                }
                for a in rows
            ]
