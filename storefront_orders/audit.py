"""
Audit trail for administrative and payment actions.

Records are structured JSON lines on the ``storefront_orders.audit`` logger; where
they end up is a deployment concern.
"""
import json
import logging
from typing import Any, Dict, Optional

from .models import utcnow

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("storefront_orders.audit")


def log(action: str, actor_id: Optional[int], resource_id: str, details: Optional[Dict[str, Any]] = None) -> None:
    """
    Write one audit record. Never raises.

    Args:
        action: What happened (e.g., "order.created", "order.status_updated")
        actor_id: User who did it, None for system actors (webhooks)
        resource_id: ID of the affected order
        details: Extra context
    """
    try:
        record = {
            "action": action,
            "actor_id": actor_id,
            "resource_id": resource_id,
            "details": details or {},
            "at": utcnow().isoformat(),
        }
        audit_logger.info(json.dumps(record, default=str))
    except Exception:
        logger.exception(f"Failed to write audit record for {action} on {resource_id}")
