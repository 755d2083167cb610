"""
Audit logging service for security and compliance.

Every entry carries a keyed hash over its own canonical snapshot, so any
later edit of a stored entry is detectable by ``verify_integrity``.
"""
from dataclasses import dataclass
from typing import Optional, Dict, Any, Union
from sqlalchemy.orm import Session
from fastapi import Request

from database.models import AuditLog, AuditAction
from auth.security import CryptoCore
from core.errors import NotFound
from core.logger import logger
from core.utils import utcnow, normalize_details, format_timestamp
import config

MAX_PAGE_SIZE = 500


@dataclass(frozen=True)
class AuditVerification:
    valid: bool
    message: str


def client_ip(request: Optional[Request]) -> Optional[str]:
    """
    Client address of a request.

    X-Forwarded-For is only honoured when the socket peer is one of
    ``config.TRUSTED_PROXIES``; otherwise any client could pick its own address.
    """
    if request is None:
        return None
    peer = request.client.host if request.client else None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and peer in config.TRUSTED_PROXIES:
        return forwarded.split(",")[0].strip() or peer
    return peer


class AuditLedger:
    """Append-only audit ledger."""

    def __init__(self, crypto: CryptoCore):
        self.crypto = crypto

    @staticmethod
    def _snapshot(
        resource_type: Optional[str],
        resource_id: Optional[str],
        details: Any,
        ip_address: Optional[str],
    ) -> Dict[str, Any]:
        # Field set covered by the hash; changing it invalidates every stored entry
        return {
            "resource_type": resource_type,
            "resource_id": resource_id,
            "details": details,
            "ip_address": ip_address,
        }

    def log(
        self,
        db: Session,
        action: Union[AuditAction, str],
        user_id: Optional[int] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> AuditLog:
        """
        Append an entry in the caller's transaction.

        The entry is flushed, not committed: it becomes durable together with
        the state change it describes, and a failed flush fails that change.

        Args:
            db: Database session
            action: Action name (e.g., AuditAction.LOGIN_SUCCESS)
            user_id: Acting user, None for anonymous/system events
            resource_type: Type of resource (e.g., "course", "registration")
            resource_id: ID of resource
            details: Free-form detail map (JSON-serialisable)
            ip_address: Requester IP address

        Returns:
            Created AuditLog
        """
        action_name = action.value if isinstance(action, AuditAction) else str(action)
        resource_id = str(resource_id) if resource_id is not None else None
        details = normalize_details(details)
        created_at = utcnow()

        integrity_hash = self.crypto.generate_action_hash(
            action_name,
            user_id,
            self._snapshot(resource_type, resource_id, details, ip_address),
            created_at,
        )
        audit_log = AuditLog(
            user_id=user_id,
            action=action_name,
            resource_type=resource_type,
            resource_id=resource_id,
            ip_address=ip_address,
            details=details,
            integrity_hash=integrity_hash,
            created_at=created_at,
        )
        db.add(audit_log)
        db.flush()
        logger.debug(f"Audit: {action_name} user={user_id} resource={resource_type}:{resource_id}")
        return audit_log

    def log_and_commit(self, db: Session, action: Union[AuditAction, str], **kwargs) -> AuditLog:
        """Append and commit at once; for security failures recorded just before an error is raised."""
        audit_log = self.log(db, action, **kwargs)
        db.commit()
        return audit_log

    def get_logs(
        self,
        db: Session,
        action: Optional[str] = None,
        user_id: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """
        Newest-first page of audit entries.

        Returns:
            Dictionary with ``logs`` and pagination info
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)

        query = db.query(AuditLog)
        if action:
            query = query.filter(AuditLog.action == action)
        if user_id is not None:
            query = query.filter(AuditLog.user_id == user_id)

        total = query.count()
        logs = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(offset).limit(limit).all()
        return {
            "logs": [self.to_dict(entry) for entry in logs],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    def verify_integrity(self, db: Session, log_id: int) -> AuditVerification:
        """
        Recompute an entry's hash from its stored fields.

        A mismatch is reported in the result, not raised.

        Raises:
            NotFound: No entry with that id
        """
        entry = db.query(AuditLog).filter(AuditLog.id == log_id).first()
        if entry is None:
            raise NotFound("Audit log not found")

        valid = self.crypto.verify_action_hash(
            entry.action,
            entry.user_id,
            self._snapshot(entry.resource_type, entry.resource_id, entry.details or {}, entry.ip_address),
            entry.created_at,
            entry.integrity_hash,
        )
        if not valid:
            logger.warning(f"Audit log {log_id} failed integrity verification")
            return AuditVerification(False, "Integrity check failed - log may have been tampered with")
        return AuditVerification(True, "Log integrity verified")

    @staticmethod
    def to_dict(entry: AuditLog) -> Dict[str, Any]:
        return {
            "id": entry.id,
            "action": entry.action,
            "user_id": entry.user_id,
            "resource_type": entry.resource_type,
            "resource_id": entry.resource_id,
            "details": entry.details,
            "ip_address": entry.ip_address,
            "integrity_hash": entry.integrity_hash,
            "timestamp": format_timestamp(entry.created_at),
        }
