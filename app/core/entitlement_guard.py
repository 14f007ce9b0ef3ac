"""
Entitlement enforcement dependency for metered features.

require_entitlement() authenticates the user and consumes one unit of the
given kind before the route body runs. Routes that produce an optimization,
score check, LinkedIn message or guided build depend on it.
"""
import logging
from fastapi import Depends
from sqlalchemy.orm import Session

from app.core.auth_dependency import get_current_user_obj, get_db
from app.core.catalog import EntitlementKind
from app.core.exceptions import ExhaustionError, ValidationError
from app.db.models.user import User
from app.services.usage_service import consume, get_active_subscription

logger = logging.getLogger(__name__)


def require_entitlement(kind: EntitlementKind):
    """
    Dependency that consumes one unit of `kind`.

    Returns:
        User object if a unit was consumed

    Raises:
        ExhaustionError: Both pools are empty (HTTP 429)
        ValidationError: no_subscription (HTTP 400)
    """
    kind = EntitlementKind(kind)

    def entitlement_checker(
        user: User = Depends(get_current_user_obj),
        db: Session = Depends(get_db)
    ) -> User:
        result = consume(db, user.id, kind)
        if result.status == "no_subscription":
            raise ValidationError("no_subscription", "No active subscription or add-on credits")
        if result.status == "exhausted":
            active = get_active_subscription(db, user.id)
            raise ExhaustionError(kind.value, active.plan_id if active else None)

        logger.debug(
            f"Entitlement check passed: user_id={user.id}, kind={kind.value}, "
            f"source={result.source}, remaining={result.remaining if result.remaining is not None else 'unlimited'}"
        )
        return user

    return entitlement_checker
