"""
Registration policy windows: registration start/end and drop deadline.
"""
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Union

from sqlalchemy.orm import Session

from database.models import Policy, PolicyKey, AuditAction
from core.errors import ValidationError
from core.logger import logger
from core.utils import utcnow, format_timestamp
from core.validators import parse_iso8601
import config

DATE_DISPLAY_FORMAT = "%Y-%m-%d"

POLICY_DESCRIPTIONS = {
    PolicyKey.REGISTRATION_START: "Course registration opens",
    PolicyKey.REGISTRATION_END: "Course registration closes",
    PolicyKey.DROP_DEADLINE: "Last day to drop a course",
}


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of a policy window check."""
    allowed: bool
    message: str
    start: Optional[str] = None
    end: Optional[str] = None
    deadline: Optional[str] = None

    # Names used by callers of the registration / drop checks
    @property
    def is_open(self) -> bool:
        return self.allowed

    @property
    def is_allowed(self) -> bool:
        return self.allowed

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class PolicyGate:
    """
    Evaluates the configured policy windows against the current instant.

    Checks read the stored rows and never write; ``set_policy`` and
    ``seed_defaults`` are the only mutating paths.
    """

    def __init__(self, audit=None):
        self.audit = audit

    @staticmethod
    def _load(db: Session) -> Dict[PolicyKey, Policy]:
        return {p.setting_key: p for p in db.query(Policy).all() if isinstance(p.setting_key, PolicyKey)}

    @staticmethod
    def _parse(policy: Optional[Policy]) -> Optional[datetime]:
        if policy is None:
            return None
        try:
            return parse_iso8601(policy.setting_value)
        except ValueError:
            logger.warning(f"Ignoring unparseable policy value for {policy.setting_key}: {policy.setting_value!r}")
            return None

    def get_policy(self, db: Session, key: Union[PolicyKey, str]) -> Optional[str]:
        """Stored ISO-8601 value for a key, or None."""
        policy = db.query(Policy).filter(Policy.setting_key == PolicyKey(key)).first()
        return policy.setting_value if policy else None

    def is_registration_open(self, db: Session, now: Optional[datetime] = None) -> PolicyDecision:
        """
        Open iff registration_start <= now <= registration_end.

        Args:
            db: Database session
            now: Instant to evaluate (naive UTC); defaults to the current time

        Returns:
            PolicyDecision; open when either bound is not configured
        """
        now = now or utcnow()
        policies = self._load(db)
        start = self._parse(policies.get(PolicyKey.REGISTRATION_START))
        end = self._parse(policies.get(PolicyKey.REGISTRATION_END))

        if start is None or end is None:
            return PolicyDecision(True, "No registration window configured")

        bounds = {"start": format_timestamp(start), "end": format_timestamp(end)}
        if now < start:
            return PolicyDecision(False, f"Registration opens on {start.strftime(DATE_DISPLAY_FORMAT)}", **bounds)
        if now > end:
            return PolicyDecision(False, f"Registration closed on {end.strftime(DATE_DISPLAY_FORMAT)}", **bounds)
        return PolicyDecision(True, "Registration is open", **bounds)

    def is_drop_allowed(self, db: Session, now: Optional[datetime] = None) -> PolicyDecision:
        """Allowed iff now <= drop_deadline; allowed when no deadline is configured."""
        now = now or utcnow()
        deadline = self._parse(self._load(db).get(PolicyKey.DROP_DEADLINE))

        if deadline is None:
            return PolicyDecision(True, "No drop deadline configured")

        formatted = format_timestamp(deadline)
        if now > deadline:
            return PolicyDecision(
                False, f"Drop deadline passed on {deadline.strftime(DATE_DISPLAY_FORMAT)}", deadline=formatted
            )
        return PolicyDecision(
            True, f"Drop allowed until {deadline.strftime(DATE_DISPLAY_FORMAT)}", deadline=formatted
        )

    def get_status(self, db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        return {
            "registration": self.is_registration_open(db, now).to_dict(),
            "drop": self.is_drop_allowed(db, now).to_dict(),
        }

    def get_all_policies(self, db: Session) -> List[Dict[str, Any]]:
        return [
            {
                "setting_key": p.setting_key.value if isinstance(p.setting_key, PolicyKey) else p.setting_key,
                "setting_value": p.setting_value,
                "description": p.description,
                "updated_at": p.updated_at.isoformat() if p.updated_at else None,
            }
            for p in db.query(Policy).order_by(Policy.setting_key).all()
        ]

    def set_policy(
        self,
        db: Session,
        key: str,
        value: str,
        actor_id: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> Policy:
        """
        Upsert a policy value.

        Raises:
            ValidationError: Unknown key or a value that is not ISO-8601
        """
        try:
            policy_key = PolicyKey(key)
        except ValueError:
            allowed = ", ".join(k.value for k in PolicyKey)
            raise ValidationError(f"Invalid policy key. Allowed keys: {allowed}", field="setting_key")
        try:
            parse_iso8601(value)
        except ValueError:
            raise ValidationError("Value must be a valid ISO 8601 date", field="setting_value")

        policy = db.query(Policy).filter(Policy.setting_key == policy_key).first()
        old_value = policy.setting_value if policy else None
        if policy is None:
            policy = Policy(
                setting_key=policy_key,
                setting_value=value,
                description=POLICY_DESCRIPTIONS[policy_key],
                updated_by=actor_id,
            )
            db.add(policy)
        else:
            policy.setting_value = value
            policy.updated_by = actor_id
            policy.updated_at = utcnow()
        db.flush()

        if self.audit is not None:
            self.audit.log(
                db,
                AuditAction.POLICY_UPDATE,
                user_id=actor_id,
                resource_type="policy",
                resource_id=policy_key.value,
                details={"setting_key": policy_key.value, "old_value": old_value, "new_value": value},
                ip_address=ip_address,
            )
        db.commit()
        logger.info(f"Policy {policy_key.value} set to {value}")
        return policy

    def seed_defaults(self, db: Session, now: Optional[datetime] = None) -> int:
        """
        Insert any missing policy rows.

        Values come from REGISTRATION_START / REGISTRATION_END / DROP_DEADLINE,
        falling back to now, now + 180 days and now + 90 days.

        Returns:
            Number of rows created
        """
        now = now or utcnow()
        defaults = {
            PolicyKey.REGISTRATION_START: config.REGISTRATION_START or format_timestamp(now),
            PolicyKey.REGISTRATION_END: config.REGISTRATION_END or format_timestamp(now + timedelta(days=180)),
            PolicyKey.DROP_DEADLINE: config.DROP_DEADLINE or format_timestamp(now + timedelta(days=90)),
        }
        existing = self._load(db)
        created = 0
        for key, value in defaults.items():
            if key in existing:
                continue
            db.add(Policy(setting_key=key, setting_value=value, description=POLICY_DESCRIPTIONS[key]))
            created += 1
        if created:
            db.commit()
            logger.info(f"Seeded {created} default policy setting(s)")
        return created
